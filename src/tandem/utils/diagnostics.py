from typing import Optional
from pydantic import BaseModel

class TandemDiagnostic(BaseModel):
    """
    Standardized problem report for build, load and template issues.
    """
    file_path: str
    error_code: str
    message: str
    severity: str = "error" # 'error', 'warning', 'critical'
    suggestion: Optional[str] = None
    line_number: Optional[int] = None

    def __str__(self) -> str:
        loc = f"{self.file_path}"
        if self.line_number:
            loc += f":{self.line_number}"
        return f"[{self.error_code}] {self.message} (at {loc})"


class TandemError(Exception):
    """
    Base class for every error raised by the orchestrator.
    """
    error_code = "ERR_TANDEM"

    def __init__(self, message: str, path: Optional[str] = None):
        self.message = message
        self.path = path
        super().__init__(message)

    def to_diagnostic(self, severity: str = "error") -> TandemDiagnostic:
        return TandemDiagnostic(
            file_path=self.path or "<runtime>",
            error_code=self.error_code,
            message=self.message,
            severity=severity,
        )


class ConfigError(TandemError):
    """Invalid or unreadable tandem.yaml / options."""
    error_code = "ERR_CONFIG"


class CompileError(TandemError):
    """The server compile command failed or exited non-zero."""
    error_code = "ERR_COMPILE"

    def __init__(self, message: str, path: Optional[str] = None, returncode: Optional[int] = None):
        self.returncode = returncode
        super().__init__(message, path)


class BundleError(TandemError):
    """
    A client bundling pass failed. Bundlers may attach the offending file and
    a pre-rendered code frame.
    """
    error_code = "ERR_BUNDLE"

    def __init__(
        self,
        message: str,
        path: Optional[str] = None,
        file_name: Optional[str] = None,
        highlighted_code_frame: Optional[str] = None,
    ):
        self.file_name = file_name
        self.highlighted_code_frame = highlighted_code_frame
        super().__init__(message, path)


class LoadError(TandemError):
    """The compiled server module could not be imported."""
    error_code = "ERR_LOAD"


class ShapeError(TandemError):
    """The server module imported but exposes no listen capability."""
    error_code = "ERR_SHAPE"


class TemplateMissing(TandemError):
    """No HTML template could be located and no fallback is allowed."""
    error_code = "ERR_TEMPLATE_MISSING"


class TemplateError(TandemError):
    """The HTML template cannot be injected (markers or placeholders are malformed)."""
    error_code = "ERR_TEMPLATE"
