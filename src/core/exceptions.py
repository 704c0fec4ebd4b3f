"""
Resolver Exception Classes

Custom exceptions for the reference resolution engine. None of these ever
reach the caller of a public engine operation: the engine converts every one
of them into a "not found" outcome and leaves the diagnosis to the logs.
"""

from pathlib import Path
from typing import Any


class TerraformResolverError(Exception):
    """Base exception for all Terraform resolver errors."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.context = context or {}

    def __str__(self) -> str:
        base_msg = super().__str__()
        if self.error_code:
            base_msg = f"[{self.error_code}] {base_msg}"
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg = f"{base_msg} (Context: {context_str})"
        return base_msg


class FileAccessError(TerraformResolverError):
    """Raised when a configuration file or directory cannot be read."""

    def __init__(
        self,
        message: str,
        path: Path | str | None = None,
        operation: str | None = None,
    ) -> None:
        context = {}
        if path is not None:
            context["path"] = str(path)
        if operation:
            context["operation"] = operation
        super().__init__(message, "FILE_ACCESS_ERROR", context)


class MalformedLiteralError(TerraformResolverError):
    """Raised when extracted text is not a well-formed structured literal."""

    def __init__(self, message: str, fragment: str | None = None) -> None:
        context = {}
        if fragment is not None:
            # Keep the log line readable for large objects
            context["fragment"] = fragment if len(fragment) <= 60 else fragment[:57] + "..."
        super().__init__(message, "MALFORMED_LITERAL", context)


class ReferenceSyntaxError(TerraformResolverError):
    """Raised when text cannot be interpreted as a symbolic reference."""

    def __init__(self, message: str, reference: str | None = None) -> None:
        context = {}
        if reference is not None:
            context["reference"] = reference
        super().__init__(message, "REFERENCE_SYNTAX_ERROR", context)


class ConfigurationError(TerraformResolverError):
    """Raised when resolver settings cannot be loaded or validated."""

    def __init__(
        self,
        message: str,
        config_path: Path | str | None = None,
        field_name: str | None = None,
    ) -> None:
        context = {}
        if config_path is not None:
            context["config_path"] = str(config_path)
        if field_name:
            context["field_name"] = field_name
        super().__init__(message, "CONFIGURATION_ERROR", context)

    def get_recovery_hint(self) -> str:
        """Provide a helpful hint for fixing the configuration error."""
        if "field_name" in self.context:
            field = self.context["field_name"]
            return f"Check the value of '{field}' in the resolver settings file"
        return "Ensure the settings file is a YAML or JSON mapping of resolver options"
