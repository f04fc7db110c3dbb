from dataclasses import dataclass


@dataclass(slots=True)
class Principal:
    """The authenticated caller. ``subject`` is the user id every run is scoped to."""

    subject: str
