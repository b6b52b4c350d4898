"""Exceptions raised by the store, the controllers and the store clients."""


class QuizSyncError(Exception):
    """Base class for every error raised by the game synchronization layer."""


# --- Input validation (user-correctable, never retried) ---

class InputValidationError(QuizSyncError):
    pass


class InvalidPinError(InputValidationError):
    """No session could be resolved for the join code."""


class NoQuestionsError(InputValidationError):
    """The quiz being started has no questions."""


class DisplayNameRequiredError(InputValidationError):
    """An anonymous player tried to join without a display name."""


class InvalidQuestionIndexError(InputValidationError):
    """A question index outside the quiz (or behind the current one) was requested."""


# --- State conflicts (local view is stale; re-poll before trusting it again) ---

class StateConflictError(QuizSyncError):
    pass


class AlreadyAnsweredError(StateConflictError):
    pass


class AlreadyEndedError(StateConflictError):
    pass


class GameNotActiveError(StateConflictError):
    pass


class SessionNotJoinableError(StateConflictError):
    pass


class GameAlreadyStartedError(StateConflictError):
    pass


class AnswerNotRevealedError(StateConflictError):
    """advance() was called before the answer to a non-final question was shown."""


# --- Store errors ---

class StoreError(QuizSyncError):
    pass


class StoreUnavailableError(StoreError):
    """Transient transport failure (network, timeout, 5xx). Safe to retry."""


class StoreConflictError(StoreError):
    """A conditional update did not match the stored row."""


class RecordNotFoundError(StoreError):
    pass
