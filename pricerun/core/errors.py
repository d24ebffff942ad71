class PipelineError(Exception):
    """Base class for errors surfaced to callers of the rule run pipeline."""

    code = "pipeline_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(PipelineError):
    code = "not_found"


class RuleNotFound(NotFoundError):
    def __init__(self, rule_id: str):
        super().__init__(f"Pricing rule {rule_id} not found")
        self.rule_id = rule_id


class RunNotFound(NotFoundError):
    def __init__(self, run_id: str):
        super().__init__(f"Rule run {run_id} not found")
        self.run_id = run_id


class TargetNotFound(NotFoundError):
    def __init__(self, target_id: str):
        super().__init__(f"Rule target {target_id} not found")
        self.target_id = target_id


class InvalidState(PipelineError):
    code = "invalid_state"


class RuleDisabled(InvalidState):
    def __init__(self, rule_id: str):
        super().__init__(f"Pricing rule {rule_id} is disabled")
        self.rule_id = rule_id


class ChannelError(Exception):
    """Error reported by a channel connector.

    ``status_code`` and ``code`` carry whatever the platform returned so the
    applier can decide between retrying and failing the target.
    """

    retryable = False

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: str | None = None,
        retry_after_seconds: float | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code
        self.retry_after_seconds = retry_after_seconds


class RetryableChannelError(ChannelError):
    retryable = True


class FatalChannelError(ChannelError):
    retryable = False
