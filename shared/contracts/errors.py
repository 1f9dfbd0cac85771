from __future__ import annotations


class PetMedsError(Exception):
    """Base class for dose engine failures."""


class InvalidSchedule(PetMedsError, ValueError):
    """Malformed schedule; raised before any generation is attempted."""


class IllegalTransition(PetMedsError):
    def __init__(self, message: str, dose_event_id: int | None = None, status: str | None = None) -> None:
        super().__init__(message)
        self.dose_event_id = dose_event_id
        self.status = status


class StoreUnavailable(PetMedsError):
    """Transient storage failure; sweeps defer to their next run."""


class NotificationDispatchFailure(PetMedsError):
    def __init__(self, message: str, user_id: int | None = None) -> None:
        super().__init__(message)
        self.user_id = user_id
