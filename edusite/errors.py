class ScoringError(Exception):
    """Base class for failures reported by the test result workflow."""


class UserNotFound(ScoringError):
    def __init__(self, email: str):
        super().__init__(f"User not found: {email}")
        self.email = email


class InvalidInput(ScoringError):
    pass


class PersistenceFailure(ScoringError):
    pass
