from dataclasses import dataclass


@dataclass(frozen=True)
class Requester:
    """Already authenticated caller, as handed over by the auth layer."""

    user_id: str
    name: str | None = None
    email: str | None = None
    phone: str | None = None
