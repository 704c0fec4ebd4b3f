"""
Terraform Reference Resolver

Answers "what is the value of reference R, interpreted from directory D" by
static analysis of the configuration tree. At each directory the search
stops at the first hit, in this order:

1. override files (``*.tfvars`` / ``*.tfvars.json``), for input references
2. ``locals`` declarations
3. ``output`` declarations, for input references
4. the value threaded in from a module call site (enhanced mode only)
5. ``variable`` defaults, for input references
6. the output of a local module, for ``module.<name>.<output>``
7. the same procedure in the parent directory, within the workspace

Every value found is scanned for further references, which are resolved
relative to the directory where the value was found and substituted into
it. Recursion is bounded by depth and guarded against cycles; every public
operation is total and reports failure as None.
"""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from pathlib import Path

from pydantic import TypeAdapter

from src.core.cache import BoundedCache, CacheStats
from src.core.config import ResolverSettings
from src.core.exceptions import (
    FileAccessError,
    MalformedLiteralError,
    ReferenceSyntaxError,
)
from src.core.file_accessor import LocalFileAccessor
from src.core.protocols import FileAccessor

from . import extractor
from .context import ModuleFrame, ResolutionContext
from .literals import extract_property, parse_json_variable
from .models import ContextValue, ModuleCall
from .references import ReferenceKind, SymbolicReference, substitute_reference

logger = logging.getLogger(__name__)

# Cached marker for "looked up, nothing there"
_MISS = ""

_ENVIRONMENT_LABELS = ("dev", "test", "prod", "staging")

_module_calls_adapter = TypeAdapter(list[ModuleCall])

# Whole-resolution results may depend on files outside the directories in
# their key (module chases, call-site threading).
_RESOLUTION_KINDS = ("resolve", "enhanced")


@dataclass(frozen=True)
class Resolution:
    """Outcome of one recursive step."""

    value: str | None
    # False when a cycle was cut somewhere below this step: the outcome then
    # depends on the visited set, which cache keys do not encode.
    cacheable: bool = True

    @property
    def found(self) -> bool:
        return self.value is not None


NOT_FOUND = Resolution(None)


def _cache_key(kind: str, *parts: str) -> str:
    return json.dumps([kind, *parts], ensure_ascii=False)


def _kind_prefix(kind: str) -> str:
    """Substring shared by every cache key of one kind."""
    return _cache_key(kind)[:-1]


class TerraformReferenceResolver:
    """
    Static resolution engine for one workspace.

    The engine owns its cache. File access goes through a FileAccessor so
    tests can observe or replace the I/O.
    """

    def __init__(
        self,
        workspace_root: Path | str,
        settings: ResolverSettings | None = None,
        accessor: FileAccessor | None = None,
        cache: BoundedCache | None = None,
    ):
        """
        Initialize the resolver.

        Args:
            workspace_root: Directory that bounds parent-directory fallback
            settings: Resolver settings (defaults when omitted)
            accessor: File accessor (local filesystem when omitted)
            cache: Cache instance (built from the settings when omitted)
        """
        self.settings = settings or ResolverSettings()
        self._root = Path(workspace_root).resolve()
        self._accessor = accessor or LocalFileAccessor(encoding=self.settings.encoding)
        self._cache = cache or BoundedCache(
            ttl_seconds=self.settings.cache_ttl_seconds,
            max_entries=self.settings.cache_max_entries,
            sweep_interval_seconds=self.settings.sweep_interval_seconds,
        )
        # (source, calling directory) -> module directory; successes only
        self._module_paths: dict[tuple[str, str], Path] = {}
        self._logger = logger.getChild(self.__class__.__name__)
        self._logger.info(f"Resolver created for workspace {self._root}")

    @property
    def workspace_root(self) -> Path:
        return self._root

    # --- public operations ---

    async def resolve(
        self, reference: str | SymbolicReference, start_directory: Path | str
    ) -> str | None:
        """
        Resolve a reference by directory-order search.

        Args:
            reference: Reference text (``var.x``, ``local.y``, ``module.m.o``,
                ``data.t.n.attr``, a bare name, or any of these followed by a
                property path)
            start_directory: Directory the reference is interpreted from

        Returns:
            The resolved literal text, or None when not found
        """
        return await self._run(reference, start_directory, enhanced=False)

    async def resolve_with_module_inputs(
        self, reference: str | SymbolicReference, start_directory: Path | str
    ) -> str | None:
        """
        Resolve a reference, also following values passed in by module calls.

        When ``start_directory`` is a module's own directory, an input
        variable's value may come from the argument assigned at the call site
        in the parent directory. That argument is resolved in the caller's
        context.
        """
        return await self._run(reference, start_directory, enhanced=True)

    async def resolve_in_multiple_contexts(
        self,
        reference: str | SymbolicReference,
        candidate_directories: Iterable[Path | str],
    ) -> list[ContextValue]:
        """
        Resolve the reference independently from each candidate directory.

        Candidates are resolved concurrently. Results follow candidate order,
        not completion order. Candidates that do not exist and candidates
        without a value are left out alike.
        """
        directories = list(
            dict.fromkeys(self._normalize(d) for d in candidate_directories)
        )

        values = await asyncio.gather(
            *(self._run(reference, d, enhanced=True) for d in directories)
        )
        return [
            ContextValue(value=value, directory=directory, context=self.context_label(directory))
            for directory, value in zip(directories, values)
            if value
        ]

    async def resolve_property(
        self,
        object_reference: str | SymbolicReference,
        property_name: str,
        directory: Path | str,
    ) -> str | None:
        """
        Resolve a structured value and project one field out of it.

        Returns:
            The field's literal text, or None when the base is unresolvable or
            has no such field
        """
        base = await self.resolve_with_module_inputs(object_reference, directory)
        if base is None:
            return None
        try:
            return extract_property(base, property_name)
        except Exception:
            self._logger.exception(f"Property projection failed for {property_name}")
            return None

    async def resolve_module_path(
        self, source: str, from_directory: Path | str
    ) -> Path | None:
        """
        Map a module ``source`` expression to a directory in the workspace.

        Relative sources (``./x``, ``../x`` or a bare path) resolve against
        the calling directory and a leading ``/`` against the workspace root.
        Remote sources and paths leaving the workspace give None.
        """
        source = extractor.unquote(source)
        directory = self._normalize(from_directory)
        table_key = (source, str(directory))
        if table_key in self._module_paths:
            return self._module_paths[table_key]

        if not source or any(marker in source for marker in self.settings.remote_source_markers):
            self._logger.debug(f"Module source is not local: {source}")
            return None

        if source.startswith("/"):
            candidate = self._root / source.lstrip("/")
        else:
            candidate = directory / source
        candidate = candidate.resolve()

        if not self.is_within_workspace(candidate) or not await self._is_directory(candidate):
            self._logger.debug(f"Module source {source} does not name a workspace directory")
            return None

        self._module_paths[table_key] = candidate
        return candidate

    def candidate_directories(self, document_directory: Path | str) -> list[Path]:
        """Document directory, workspace root, then the environment directories."""
        candidates = [self._normalize(document_directory), self._root]
        candidates.extend(
            (self._root / name).resolve() for name in self.settings.environment_directories
        )
        return list(dict.fromkeys(candidates))

    def context_label(self, directory: Path | str) -> str:
        """Short human label of a directory relative to the workspace."""
        path = self._normalize(directory)
        if path == self._root:
            return "root"
        try:
            relative = path.relative_to(self._root)
        except ValueError:
            return str(path)
        if relative.parts[-1] in _ENVIRONMENT_LABELS:
            return relative.parts[-1]
        return relative.as_posix()

    def is_within_workspace(self, path: Path | str) -> bool:
        return self._normalize(path).is_relative_to(self._root)

    # --- lifecycle ---

    def on_file_changed(self, file_path: Path | str, change_type: str = "changed") -> int:
        """
        Drop every cache entry derived from a changed file.

        Per-directory lookups are keyed by directory, so the file's directory
        is invalidated along with the file itself. Whole-resolution results
        are all dropped, since a value reached through a module or a call
        site is keyed only by the directory the resolution started from.

        Returns:
            Number of invalidated entries
        """
        path = self._normalize(file_path)
        removed = self._cache.invalidate(str(path))
        removed += self._cache.invalidate(str(path.parent))
        for kind in _RESOLUTION_KINDS:
            removed += self._cache.invalidate(_kind_prefix(kind))
        self._logger.debug(f"File {change_type}: {path}, invalidated {removed} entries")
        return removed

    async def clear_cache(self) -> None:
        self._cache.clear()
        self._module_paths.clear()

    def cache_stats(self) -> CacheStats:
        return self._cache.stats()

    def start(self) -> None:
        """Start the periodic cache sweep (requires a running event loop)."""
        self._cache.start_sweeper()

    async def dispose(self) -> None:
        await self._cache.stop_sweeper()
        await self.clear_cache()
        self._logger.info(f"Resolver disposed for workspace {self._root}")

    async def __aenter__(self) -> "TerraformReferenceResolver":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.dispose()

    # --- recursion ---

    async def _run(
        self,
        reference: str | SymbolicReference,
        start_directory: Path | str,
        enhanced: bool,
    ) -> str | None:
        try:
            if isinstance(reference, SymbolicReference):
                parsed = reference
            else:
                parsed = SymbolicReference.parse(reference)
            directory = self._normalize(start_directory)
            if not self.is_within_workspace(directory):
                self._logger.debug(f"{directory} is outside the workspace {self._root}")
                return None
            if not await self._is_directory(directory):
                self._logger.debug(f"{directory} is not a directory")
                return None
            result = await self._resolve(ResolutionContext.root(parsed, directory), enhanced)
        except ReferenceSyntaxError as e:
            self._logger.debug(f"Ignoring unresolvable text: {e}")
            return None
        except Exception:
            self._logger.exception(f"Unexpected failure resolving {reference}")
            return None

        if result.found:
            self._logger.debug(f"Resolved {parsed} from {directory}")
        return result.value

    async def _resolve(self, ctx: ResolutionContext, enhanced: bool) -> Resolution:
        if ctx.depth > self.settings.max_depth:
            self._logger.warning(
                f"Maximum depth {self.settings.max_depth} reached resolving "
                f"{ctx.reference} in {ctx.directory}"
            )
            return NOT_FOUND

        if ctx.is_cycle:
            self._logger.debug(f"Cycle cut at {ctx.reference} in {ctx.directory}")
            return Resolution(None, cacheable=False)

        key = _cache_key("enhanced" if enhanced else "resolve", *ctx.cache_key_parts())
        cached = self._cache.get(key)
        if cached is not None:
            return Resolution(cached or None)

        if ctx.reference.property_path:
            result = await self._resolve_projection(ctx, enhanced)
        else:
            result = await self._resolve_symbol(ctx, enhanced)

        if result.cacheable:
            self._cache.set(key, result.value if result.found else _MISS)
        return result

    async def _resolve_projection(self, ctx: ResolutionContext, enhanced: bool) -> Resolution:
        reference = ctx.reference
        base = await self._resolve(ctx.with_reference(reference.base()), enhanced)
        value = base.value
        for name in reference.property_path:
            if value is None:
                break
            value = extract_property(value, name)
        return Resolution(value, base.cacheable)

    async def _resolve_symbol(self, ctx: ResolutionContext, enhanced: bool) -> Resolution:
        reference = ctx.reference
        directory = ctx.directory
        cacheable = True

        if reference.kind is ReferenceKind.INPUT:
            for lookup in (self._lookup_override, self._lookup_local, self._lookup_output):
                value = await lookup(reference.name, directory)
                if value is not None:
                    return await self._expand(value, ctx, directory, ctx.module_stack, enhanced)
            if enhanced:
                threaded = await self._thread_module_input(ctx, enhanced)
                if threaded.found:
                    return threaded
                cacheable = threaded.cacheable
            value = await self._lookup_default(reference.name, directory)
            if value is not None:
                return await self._expand(value, ctx, directory, ctx.module_stack, enhanced)

        elif reference.kind is ReferenceKind.LOCAL:
            value = await self._lookup_local(reference.name, directory)
            if value is not None:
                return await self._expand(value, ctx, directory, ctx.module_stack, enhanced)

        elif reference.kind is ReferenceKind.MODULE_OUTPUT:
            chased = await self._chase_module_output(ctx, enhanced)
            if chased.found:
                return chased
            cacheable = chased.cacheable

        elif reference.kind is ReferenceKind.DATA_ATTRIBUTE:
            value = await self._lookup_data(reference, directory)
            if value is not None:
                return await self._expand(value, ctx, directory, ctx.module_stack, enhanced)

        fallback = await self._resolve_in_parent(ctx, enhanced)
        return Resolution(fallback.value, fallback.cacheable and cacheable)

    async def _resolve_in_parent(self, ctx: ResolutionContext, enhanced: bool) -> Resolution:
        directory = ctx.directory
        parent = directory.parent
        if directory == self._root or parent == directory or not self.is_within_workspace(parent):
            return NOT_FOUND
        if not await self._is_directory(parent):
            return NOT_FOUND
        return await self._resolve(ctx.child(ctx.reference, parent), enhanced)

    async def _expand(
        self,
        value: str,
        ctx: ResolutionContext,
        directory: Path,
        module_stack: tuple[ModuleFrame, ...],
        enhanced: bool,
    ) -> Resolution:
        """Substitute the nested references of a found value."""
        references = {match.reference for match in extractor.find_references(value)}
        if not references:
            return Resolution(value)

        result = value
        cacheable = True
        unresolved = []
        # Longest first, so "var.ab" is never touched by the substitution of "var.a"
        for reference in sorted(references, key=lambda r: (-len(r.text), r.text)):
            nested = await self._resolve(ctx.child(reference, directory, module_stack), enhanced)
            cacheable = cacheable and nested.cacheable
            if nested.found:
                result = substitute_reference(result, reference.text, nested.value)
            else:
                unresolved.append(reference)

        if unresolved and len(references) == 1 and _is_alias(value, unresolved[0]):
            return Resolution(None, cacheable)
        return Resolution(result, cacheable)

    async def _chase_module_output(self, ctx: ResolutionContext, enhanced: bool) -> Resolution:
        reference = ctx.reference
        calls = await self._module_calls_in(ctx.directory)
        call = next((c for c in calls if c.name == reference.module_name), None)
        if call is None:
            return NOT_FOUND

        target = await self.resolve_module_path(call.source, call.directory)
        if target is None:
            return NOT_FOUND

        output = await self._lookup_output(reference.output_name, target)
        if output is None:
            self._logger.debug(f"Module {call.name} has no output {reference.output_name}")
            return NOT_FOUND

        stack = ctx.module_stack
        if enhanced:
            stack = ctx.entering_module(ModuleFrame(call=call, directory=target))
        return await self._expand(output, ctx, target, stack, enhanced)

    async def _thread_module_input(self, ctx: ResolutionContext, enhanced: bool) -> Resolution:
        """Resolve an input from the argument a module call site passes in."""
        name = ctx.reference.name
        frame = ctx.current_module
        if frame is not None and frame.directory == ctx.directory:
            call_sites = [(frame.call, ctx.leaving_module())]
        else:
            call_sites = [
                (call, ctx.module_stack) for call in await self._calls_into(ctx.directory)
            ]

        cacheable = True
        for call, stack in call_sites:
            argument = call.inputs.get(name)
            if argument is None:
                continue
            self._logger.debug(f"Input {name} threaded from module {call.name} in {call.directory}")
            threaded = await self._expand(argument, ctx, call.directory, stack, enhanced)
            if threaded.found:
                return threaded
            cacheable = cacheable and threaded.cacheable
        return Resolution(None, cacheable)

    async def _calls_into(self, directory: Path) -> list[ModuleCall]:
        """Module calls in the parent directory whose source is ``directory``."""
        parent = directory.parent
        if directory == self._root or not self.is_within_workspace(parent):
            return []
        matching = []
        for call in await self._module_calls_in(parent):
            if await self.resolve_module_path(call.source, parent) == directory:
                matching.append(call)
        return matching

    # --- cached per-directory lookups ---

    async def _lookup_override(self, name: str, directory: Path) -> str | None:
        async def compute() -> str | None:
            for path in await self._files_with_suffixes(directory, self.settings.override_suffixes):
                text = await self._read(path)
                if text is None:
                    continue
                if path.name.endswith(".json"):
                    try:
                        value = parse_json_variable(text, name)
                    except MalformedLiteralError as e:
                        self._logger.error(f"Skipping malformed {path}: {e}")
                        continue
                else:
                    value = extractor.extract_assigned_value(text, name)
                if value is not None:
                    self._logger.debug(f"Found {name} in {path}")
                    return value
            return None

        return await self._cached_lookup("tfvars", name, directory, compute)

    async def _lookup_local(self, name: str, directory: Path) -> str | None:
        return await self._lookup_in_configuration(
            "locals", name, directory, lambda text: extractor.extract_local_value(text, name)
        )

    async def _lookup_output(self, name: str, directory: Path) -> str | None:
        return await self._lookup_in_configuration(
            "outputs", name, directory, lambda text: extractor.extract_output_value(text, name)
        )

    async def _lookup_default(self, name: str, directory: Path) -> str | None:
        return await self._lookup_in_configuration(
            "variables", name, directory, lambda text: extractor.extract_variable_default(text, name)
        )

    async def _lookup_data(self, reference: SymbolicReference, directory: Path) -> str | None:
        data_type, data_name, attribute = reference.data_address
        return await self._lookup_in_configuration(
            "data",
            reference.base().text,
            directory,
            lambda text: extractor.extract_data_argument(text, data_type, data_name, attribute),
        )

    async def _lookup_in_configuration(
        self,
        kind: str,
        name: str,
        directory: Path,
        extract: Callable[[str], str | None],
    ) -> str | None:
        async def compute() -> str | None:
            suffixes = self.settings.configuration_suffixes
            for path in await self._files_with_suffixes(directory, suffixes):
                text = await self._read(path)
                if text is None:
                    continue
                value = extract(text)
                if value is not None:
                    self._logger.debug(f"Found {kind} {name} in {path}")
                    return value
            return None

        return await self._cached_lookup(kind, name, directory, compute)

    async def _cached_lookup(
        self,
        kind: str,
        name: str,
        directory: Path,
        compute: Callable[[], Awaitable[str | None]],
    ) -> str | None:
        key = _cache_key(kind, name, str(directory))
        cached = self._cache.get(key)
        if cached is not None:
            return cached or None
        value = await compute()
        self._cache.set(key, _MISS if value is None else value)
        return value or None

    async def _module_calls_in(self, directory: Path) -> list[ModuleCall]:
        key = _cache_key("modules", str(directory))
        cached = self._cache.get(key)
        if cached is not None:
            return _module_calls_adapter.validate_json(cached)

        calls: list[ModuleCall] = []
        for path in await self._files_with_suffixes(directory, self.settings.configuration_suffixes):
            text = await self._read(path)
            if text is not None:
                calls.extend(extractor.iter_module_calls(text, directory))
        self._cache.set(key, _module_calls_adapter.dump_json(calls).decode())
        return calls

    # --- file access (I/O errors become "not found") ---

    async def _files_with_suffixes(self, directory: Path, suffixes: list[str]) -> list[Path]:
        try:
            entries = await self._accessor.list_entries(directory)
        except FileAccessError as e:
            self._logger.error(f"Cannot list {directory}: {e}")
            return []
        return [
            directory / entry
            for entry in entries
            if any(entry.endswith(suffix) for suffix in suffixes)
        ]

    async def _read(self, path: Path) -> str | None:
        try:
            return await self._accessor.read_text(path)
        except FileAccessError as e:
            self._logger.error(f"Cannot read {path}: {e}")
            return None

    async def _is_directory(self, path: Path) -> bool:
        try:
            return await self._accessor.is_directory(path)
        except FileAccessError as e:
            self._logger.error(f"Cannot stat {path}: {e}")
            return False

    def _normalize(self, path: Path | str) -> Path:
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = self._root / candidate
        return candidate.resolve()


def _is_alias(value: str, reference: SymbolicReference) -> bool:
    """True when the whole value is the reference itself, bare or interpolated."""
    stripped = value.strip()
    if stripped == reference.text:
        return True
    if stripped.startswith('"${') and stripped.endswith('}"'):
        return stripped[3:-2].strip() == reference.text
    return False
