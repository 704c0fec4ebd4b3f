"""Terraform plugin: static resolution of variables, locals, module outputs and data attributes."""

from .references import ReferenceKind, SymbolicReference
from .resolver import TerraformReferenceResolver
from .scanner import ReferenceScanner

__all__ = [
    "ReferenceKind",
    "SymbolicReference",
    "TerraformReferenceResolver",
    "ReferenceScanner",
]
