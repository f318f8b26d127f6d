"""Custom exception types for the inbox triage pipeline.

Messages should say what failed, where, and what to do about it. Most of
these never escape a batch pass: the pipeline catches them per item and
degrades (tier miss, safe fallback, counted failure). They do escape from
operations a user invokes directly (resolving a card, authoring a rule).
"""


class TriageError(Exception):
    """Base exception for all inbox triage errors."""

    pass


class ConfigValidationError(TriageError):
    """Raised when config.yaml fails Pydantic validation."""

    pass


class ConfigLoadError(TriageError):
    """Raised when config.yaml cannot be loaded (file not found, YAML parse error)."""

    pass


class DatabaseError(TriageError):
    """Raised when SQLite operations fail."""

    pass


class ClassificationError(TriageError):
    """Raised when a single item cannot be classified or persisted.

    Attributes:
        item_id: The inbox item that failed
    """

    def __init__(self, message: str, item_id: str | None = None):
        super().__init__(message)
        self.item_id = item_id


class ModelResponseError(TriageError):
    """Raised when model output cannot be parsed into the expected shape.

    Attributes:
        raw_response: The first 500 characters of the offending output
    """

    def __init__(self, message: str, raw_response: str = ""):
        super().__init__(message)
        self.raw_response = raw_response[:500]


class RuleValidationError(TriageError):
    """Raised when a rule definition is incomplete or inconsistent.

    Examples: a structured rule without a trigger, a guidance rule without
    guidance text, a batch action without a batch type.
    """

    pass


class BatchCardNotFoundError(TriageError):
    """Raised when a batch card ID does not exist."""

    def __init__(self, card_id: str):
        super().__init__(f"Batch card not found: {card_id}")
        self.card_id = card_id


class BatchCardStateError(TriageError):
    """Raised when a card is not in a state that allows the requested operation.

    Attributes:
        card_id: The card that was targeted
        status: The card's current status
    """

    def __init__(self, message: str, card_id: str, status: str):
        super().__init__(message)
        self.card_id = card_id
        self.status = status
