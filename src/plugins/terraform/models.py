from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field


class ModuleCall(BaseModel):
    """
    One ``module "name" { source = ... }`` block as declared in a directory.

    Read-only once parsed; a directory holds one instance per module block.
    """

    name: str = Field(..., description="Module instance name (the block label).")
    source: str = Field(
        ..., description="Source path expression with surrounding quotes removed."
    )
    inputs: dict[str, str] = Field(
        default_factory=dict,
        description="Input parameter name -> argument expression at the call site.",
    )
    directory: Path = Field(..., description="Directory declaring the module block.")

    model_config = ConfigDict(frozen=True)


class ContextValue(BaseModel):
    """A value found for a reference when interpreted from one directory."""

    value: str = Field(..., description="Resolved literal text.")
    directory: Path = Field(..., description="Directory the resolution started from.")
    context: str = Field(
        ..., description="Human-readable context label (e.g. 'root', 'prod')."
    )

    model_config = ConfigDict(frozen=True)


class AnnotatedValue(BaseModel):
    """A distinct value together with every context that yields it."""

    value: str
    contexts: list[str] = Field(default_factory=list)
    directories: list[Path] = Field(default_factory=list)


class ReferenceAnnotation(BaseModel):
    """The resolution outcome of one reference occurrence in a document."""

    reference: str = Field(..., description="Reference text as it appears in code.")
    line: int = Field(..., ge=0, description="Zero-based line of the occurrence.")
    column: int = Field(..., ge=0, description="Zero-based column of the occurrence.")
    values: list[AnnotatedValue] = Field(
        default_factory=list,
        description="Distinct values in candidate-context order; empty when unresolved.",
    )

    @property
    def resolved(self) -> bool:
        return bool(self.values)
