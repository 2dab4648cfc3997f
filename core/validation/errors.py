from __future__ import annotations


class ValidationEngineError(Exception):
    code = 'validation_error'
    retryable = False
    http_status = 400

    def __init__(self, message: str, *, subject_id: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.subject_id = subject_id

    def to_dict(self) -> dict:
        return {
            'code': self.code,
            'message': self.message,
            'retryable': self.retryable,
            'subject_id': self.subject_id,
        }


class NotFound(ValidationEngineError):
    code = 'not_found'
    http_status = 404


class AlreadyTerminal(ValidationEngineError):
    code = 'already_terminal'
    http_status = 409


class MissingRequiredComment(ValidationEngineError):
    code = 'missing_required_comment'


class InvalidStateForResend(ValidationEngineError):
    code = 'invalid_state_for_resend'
    http_status = 409


class InvalidTransition(ValidationEngineError):
    code = 'invalid_transition'
    http_status = 409


class InvalidDecision(ValidationEngineError):
    code = 'invalid_decision'


class InvalidEntityType(ValidationEngineError):
    code = 'invalid_entity_type'


class NoRecipientEmail(ValidationEngineError):
    code = 'no_recipient_email'


class TokenExpired(ValidationEngineError):
    code = 'token_expired'
    http_status = 410


class TokenSuperseded(TokenExpired):
    """A newer token was issued for the subject; this one is dead."""
    code = 'token_superseded'


class TokenAlreadyConsumed(ValidationEngineError):
    code = 'token_already_consumed'
    http_status = 409


class ConcurrentModification(ValidationEngineError):
    code = 'concurrent_modification'
    retryable = True
    http_status = 409


class AggregationStoreUnavailable(ValidationEngineError):
    code = 'aggregation_store_unavailable'
    retryable = True
    http_status = 503
