class DoseTrackError(Exception):
    """Base class for domain errors raised by the dose engine."""


class InvalidStatusError(DoseTrackError, ValueError):
    pass


class DoseTimingError(DoseTrackError, ValueError):
    pass


class DoseNotFoundError(DoseTrackError, KeyError):
    def __init__(self, dose_id: str) -> None:
        super().__init__(dose_id)
        self.dose_id = dose_id

    def __str__(self) -> str:
        return "dose not found"


class ScheduleNotFoundError(DoseTrackError, KeyError):
    def __init__(self, schedule_id: str) -> None:
        super().__init__(schedule_id)
        self.schedule_id = schedule_id

    def __str__(self) -> str:
        return "schedule not found"


class DoseStateConflictError(DoseTrackError):
    """Raised when a dose is already in a state the transition cannot leave."""


class ScheduleValidationError(DoseTrackError, ValueError):
    pass


class UserNotFoundError(DoseTrackError, KeyError):
    def __init__(self, user_id: str) -> None:
        super().__init__(user_id)
        self.user_id = user_id

    def __str__(self) -> str:
        return "user not found"


class DoseRangeError(DoseTrackError, ValueError):
    pass
