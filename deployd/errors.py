"""
Error taxonomy. One hierarchy for the whole pipeline.

Every class carries an HTTP status and a machine-readable code so the
webhook layer can translate it without inspecting messages. Only the
request-path errors (authentication, validation, admission) ever reach a
webhook caller; the rest end up in an Outcome and in the logs.
"""


class DeployError(Exception):
    status = 500
    code = "internal_error"
    public_message = "Internal error"


# ---------------------------------------------------------------------------
# Request path
# ---------------------------------------------------------------------------

class AuthenticationError(DeployError):
    status = 400
    code = "bad_signature"
    public_message = "Malformed signature"


class MissingSignature(AuthenticationError):
    code = "signature_missing"
    public_message = "X-Hub-Signature-256 header is required"


class InvalidSignatureLength(AuthenticationError):
    code = "signature_length"
    public_message = "X-Hub-Signature-256 has invalid length"


class InvalidSignaturePrefix(AuthenticationError):
    code = "signature_prefix"
    public_message = "X-Hub-Signature-256 must start with sha256="


class SignatureNotHex(AuthenticationError):
    code = "signature_not_hex"
    public_message = "Signature must be 64 hex digits"


class SignatureMismatch(AuthenticationError):
    status = 403
    code = "signature_mismatch"
    public_message = "Signature doesn't match"


class SecretNotConfigured(AuthenticationError):
    status = 500
    code = "secret_not_configured"
    public_message = "Webhook secret is not configured"


class ValidationError(DeployError):
    status = 400
    code = "invalid_payload"
    public_message = "Invalid push event"


class InvalidPayload(ValidationError):
    pass


class NotBranch(ValidationError):
    code = "not_branch"
    public_message = "ref must have format refs/heads/<branch>"


class AdmissionError(DeployError):
    status = 500
    code = "admission_failed"
    public_message = "Failed to queue build task"


class QueueFull(AdmissionError):
    code = "queue_full"


class QueueClosed(AdmissionError):
    code = "queue_closed"


# ---------------------------------------------------------------------------
# Task path
# ---------------------------------------------------------------------------

class WorkdirError(DeployError):
    code = "workdir_failed"


class LockTimeout(DeployError):
    code = "lock_timeout"


class SyncError(DeployError):
    code = "sync_failed"


class OpenOrCloneError(SyncError):
    """Neither opening nor cloning worked. Both causes are kept."""

    def __init__(self, url: str, path, open_error: Exception,
                 clone_error: Exception):
        self.url = url
        self.path = path
        self.open_error = open_error
        self.clone_error = clone_error
        super().__init__(
            f"Failed to open or clone {url} into {path}. "
            f"Open error: {open_error}. Clone error: {clone_error}")


class FetchError(SyncError):
    pass


class InvalidCommitId(SyncError):
    pass


class CommitNotFound(SyncError):
    pass


class CheckoutError(SyncError):
    pass


class BuildProcessError(DeployError):
    code = "build_failed"


class BuildLaunchError(BuildProcessError):
    code = "build_launch_failed"


class BuildFailedError(BuildProcessError):
    def __init__(self, command: str, returncode: int, stdout: str,
                 stderr: str):
        self.command = command
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(
            f"`{command}` exited with status {returncode}. "
            f"STDERR: {stderr.strip()}")


class NotificationError(DeployError):
    code = "notification_failed"


class UnexpectedError(DeployError):
    """A pipeline step raised something outside this hierarchy."""

    code = "unexpected_error"


def describe(exc: BaseException) -> str:
    """Render an exception and its causes, outermost first."""
    parts = []
    seen = set()
    while exc is not None and id(exc) not in seen:
        seen.add(id(exc))
        parts.append(str(exc) or type(exc).__name__)
        exc = exc.__cause__
    return ": ".join(parts)
