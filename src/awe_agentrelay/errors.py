from __future__ import annotations


class RelayError(Exception):
    """Root of every error raised by the processing core."""


class NotFoundError(RelayError, KeyError):
    def __init__(self, entity: str, entity_id: str):
        super().__init__(f'{entity} not found: {entity_id}')
        self.entity = entity
        self.entity_id = entity_id

    def __str__(self) -> str:
        # KeyError.__str__ would repr() the message.
        return str(self.args[0]) if self.args else ''


class QueueConflictError(RelayError):
    def __init__(self, entity_id: str, *, active_item_id: str | None = None):
        super().__init__(f'an active queue item already exists for {entity_id}')
        self.entity_id = entity_id
        self.active_item_id = active_item_id


class InputValidationError(RelayError, ValueError):
    def __init__(self, message: str, *, field: str | None = None, code: str = 'validation_error'):
        super().__init__(message)
        self.message = message
        self.field = field
        self.code = code


class RunCancelledError(RelayError):
    def __init__(self, entity_id: str):
        super().__init__(f'run cancelled for {entity_id}')
        self.entity_id = entity_id


class ToolUnavailableError(RelayError):
    def __init__(self, cli_type: str, message: str):
        super().__init__(message)
        self.cli_type = cli_type


class ToolExitError(RelayError):
    def __init__(self, message: str, *, exit_code: int | None):
        super().__init__(message)
        self.exit_code = exit_code


class ToolTimeoutError(ToolExitError):
    def __init__(self, timeout_seconds: float):
        super().__init__(f'CLI timed out after {timeout_seconds:g} seconds', exit_code=None)
        self.timeout_seconds = timeout_seconds


class WorkingDirectoryError(RelayError):
    def __init__(self, path: str, reason: str):
        super().__init__(f'workspace directory {path} is not usable: {reason}')
        self.path = path


class ProtocolViolationError(RelayError):
    kind = 'protocol_violation'


class OutputMissingError(ProtocolViolationError):
    kind = 'no_output'


class OutputEmptyError(ProtocolViolationError):
    kind = 'empty_output'


class OutputNotJsonError(ProtocolViolationError):
    kind = 'invalid_json'


class OutputSchemaError(ProtocolViolationError):
    kind = 'schema_invalid'


def failure_reason(exc: BaseException) -> str:
    text = str(exc or '').strip()
    return text or exc.__class__.__name__


__all__ = [
    'InputValidationError',
    'NotFoundError',
    'OutputEmptyError',
    'OutputMissingError',
    'OutputNotJsonError',
    'OutputSchemaError',
    'ProtocolViolationError',
    'QueueConflictError',
    'RelayError',
    'RunCancelledError',
    'ToolExitError',
    'ToolTimeoutError',
    'ToolUnavailableError',
    'WorkingDirectoryError',
    'failure_reason',
]
