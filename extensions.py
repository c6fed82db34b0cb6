"""Extension hooks for the BIT interpreter.

An extension is a Python file defining ``bit_lang_register(ext)``. The
function receives an :class:`ExtensionAPI` and subscribes handlers to
interpreter events or to every-N-step rules.
"""

from __future__ import annotations

import hashlib
import importlib.util
import os
import sys
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from parser import Line, SourceLocation
from scanner import BITError


EXTENSION_API_VERSION = 1

# Handler signatures:
#   program_start(interpreter, program)
#   before_line(interpreter, line)
#   after_line(interpreter, line, next_line_number)
#   on_print(interpreter, bit)
#   on_read(interpreter, bit)
#   on_error(interpreter, error)
#   program_end(interpreter)
EVENTS = (
    "program_start",
    "before_line",
    "after_line",
    "on_print",
    "on_read",
    "on_error",
    "program_end",
)


class BITExtensionError(BITError):
    pass


@dataclass(frozen=True)
class ExtensionMetadata:
    name: str
    version: str = "0.0.0"
    requires_api: int = EXTENSION_API_VERSION


@dataclass(frozen=True)
class StepContext:
    """What a step rule sees: the line just logged and the jump register before it runs."""

    step_index: int
    rule: str
    line: Line
    jump_register: int

    @property
    def line_number(self) -> int:
        return self.line.number

    @property
    def location(self) -> SourceLocation:
        return self.line.location


@dataclass(frozen=True)
class EventHook:
    priority: int
    handler: Callable[..., None]
    ext_name: str


@dataclass(frozen=True)
class StepRule:
    every_n: int
    handler: Callable[[Any, StepContext], None]
    ext_name: str
    name: str

    def due(self, step_index: int) -> bool:
        return step_index % self.every_n == 0


@dataclass
class HookRegistry:
    hooks: Dict[str, List[EventHook]] = field(default_factory=dict)
    step_rules: List[StepRule] = field(default_factory=list)

    def on_event(self, event: str, handler: Callable[..., None], *, priority: int = 0, ext_name: str = "<host>") -> None:
        if event not in EVENTS:
            raise BITExtensionError(f"Unknown event '{event}' (expected one of: {', '.join(EVENTS)})")
        hooks = self.hooks.setdefault(event, [])
        hooks.append(EventHook(priority, handler, ext_name))
        # Stable sort keeps registration order among equal priorities.
        hooks.sort(key=lambda hook: -hook.priority)

    def add_step_rule(self, every_n: int, handler: Callable[[Any, StepContext], None], *, name: str, ext_name: str = "<host>") -> None:
        if every_n <= 0:
            raise BITExtensionError("every_n_steps must be >= 1")
        self.step_rules.append(StepRule(every_n, handler, ext_name, name))

    def emit(self, event: str, *args: Any) -> None:
        for hook in self.hooks.get(event, ()):
            try:
                hook.handler(*args)
            except BITError:
                raise
            except Exception as exc:
                raise BITExtensionError(f"Extension '{hook.ext_name}' hook '{event}' failed: {exc}") from exc

    def after_step(self, interpreter: Any, ctx: StepContext) -> None:
        for rule in self.step_rules:
            if not rule.due(ctx.step_index):
                continue
            try:
                rule.handler(interpreter, ctx)
            except BITError:
                raise
            except Exception as exc:
                raise BITExtensionError(f"Extension '{rule.ext_name}' step rule '{rule.name}' failed: {exc}") from exc


@dataclass
class RuntimeServices:
    metadata: List[ExtensionMetadata] = field(default_factory=list)
    hook_registry: HookRegistry = field(default_factory=HookRegistry)

    def describe(self) -> List[str]:
        return [f"{meta.name} {meta.version} (api {meta.requires_api})" for meta in self.metadata]


class ExtensionAPI:
    def __init__(self, *, services: RuntimeServices, ext_name: str) -> None:
        self._services = services
        self._ext_name = ext_name
        self.declared = False

    def metadata(self, *, name: str, version: str = "0.0.0", requires_api: int = EXTENSION_API_VERSION) -> None:
        if requires_api != EXTENSION_API_VERSION:
            raise BITExtensionError(
                f"Extension {name} requires API {requires_api}, host supports {EXTENSION_API_VERSION}"
            )
        self._services.metadata.append(ExtensionMetadata(name=name, version=version, requires_api=requires_api))
        self.declared = True

    def on_event(self, event: str, handler: Optional[Callable[..., None]] = None, *, priority: int = 0):
        registry = self._services.hook_registry

        def register(fn: Callable[..., None]) -> Callable[..., None]:
            registry.on_event(event, fn, priority=priority, ext_name=self._ext_name)
            return fn

        return register if handler is None else register(handler)

    def every_n_steps(self, every_n: int, handler: Optional[Callable[[Any, StepContext], None]] = None, *, name: str = ""):
        registry = self._services.hook_registry

        def register(fn: Callable[[Any, StepContext], None]) -> Callable[[Any, StepContext], None]:
            registry.add_step_rule(every_n, fn, name=name or fn.__name__, ext_name=self._ext_name)
            return fn

        return register if handler is None else register(handler)


def _module_name_for(path: str) -> str:
    stem = os.path.splitext(os.path.basename(path))[0]
    digest = hashlib.sha256(path.encode("utf-8")).hexdigest()[:12]
    return "bitl_ext_" + "".join(ch if ch.isalnum() else "_" for ch in stem) + "_" + digest


def load_extension_module(path: str) -> Any:
    path = os.path.abspath(path)
    if not os.path.isfile(path):
        raise BITExtensionError(f"Extension not found: {path}")
    spec = importlib.util.spec_from_file_location(_module_name_for(path), path)
    if spec is None or spec.loader is None:
        raise BITExtensionError(f"Failed to load extension module: {path}")
    module = importlib.util.module_from_spec(spec)
    ext_dir = os.path.dirname(path)
    sys.path.insert(0, ext_dir)
    try:
        spec.loader.exec_module(module)
    except Exception as exc:
        raise BITExtensionError(f"Extension {path} failed to import: {exc}") from exc
    finally:
        if sys.path and sys.path[0] == ext_dir:
            sys.path.pop(0)
    return module


def build_default_services() -> RuntimeServices:
    return RuntimeServices()


def load_runtime_services(paths: Sequence[str]) -> RuntimeServices:
    services = build_default_services()
    for path in paths:
        module = load_extension_module(path)
        api_version = getattr(module, "BIT_LANG_EXTENSION_API_VERSION", EXTENSION_API_VERSION)
        if api_version != EXTENSION_API_VERSION:
            raise BITExtensionError(
                f"Extension {path} requires API {api_version}, host supports {EXTENSION_API_VERSION}"
            )
        register = getattr(module, "bit_lang_register", None)
        if not callable(register):
            raise BITExtensionError(f"Extension {path} must define callable bit_lang_register(ext)")
        ext_name = str(getattr(module, "BIT_LANG_EXTENSION_NAME", os.path.splitext(os.path.basename(path))[0]))
        ext = ExtensionAPI(services=services, ext_name=ext_name)
        register(ext)
        if not ext.declared:
            services.metadata.append(ExtensionMetadata(name=ext_name))
    return services
