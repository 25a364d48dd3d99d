# errors.py
# Failure taxonomy. Each class carries the exit code the CLI reports.

EXIT_OK = 0
EXIT_PRECONDITION = 1
EXIT_ROLLED_BACK = 2
EXIT_RESTORE_FAILED = 3


class CertDeployError(Exception):
    exit_code = EXIT_PRECONDITION


class PreconditionError(CertDeployError):
    """A check failed before anything was changed; safe to retry once fixed."""


class MissingParameterError(PreconditionError):
    def __init__(self, missing):
        self.missing = sorted(missing)
        super().__init__("missing value for template parameter(s): " + ", ".join(self.missing))


class GenerationError(CertDeployError):
    """Certificate generation or ACME issuance failed; live configuration untouched."""


class ValidationError(CertDeployError):
    exit_code = EXIT_ROLLED_BACK

    def __init__(self, diagnostic: str):
        self.diagnostic = diagnostic
        super().__init__(f"configuration test failed:\n{diagnostic}")


class RestoreError(CertDeployError):
    """Restoring a snapshot failed. The live configuration is in an unknown
    state and needs manual intervention."""
    exit_code = EXIT_RESTORE_FAILED

    def __init__(self, snapshot_path, target_path, cause, checker_output: str = ""):
        self.snapshot_path = snapshot_path
        self.target_path = target_path
        self.cause = cause
        self.checker_output = checker_output
        msg = (f"FATAL: could not restore snapshot {snapshot_path} into {target_path}: {cause}\n"
               f"Restore it by hand (copy {snapshot_path}/ over {target_path}/), "
               f"then run 'nginx -t' before reloading.")
        if checker_output:
            msg += f"\nConfiguration test output was:\n{checker_output}"
        super().__init__(msg)


class DnsMismatchWarning(UserWarning):
    pass
