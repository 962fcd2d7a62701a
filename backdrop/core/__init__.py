"""
Backdrop Core - daemon supervision, log classification and install workflow.

LAZY LOADING: submodules are imported on first attribute access so that
importing a leaf module (e.g. ``backdrop.core.errors``) never drags in the
whole controller.
"""

import importlib

__all__ = [
    "Holochain",
    "HolochainOptions",
    "ConfigOptions",
    "LifecycleState",
    "SupervisedProcess",
    "ExitStatus",
    "ProcessState",
    "LineParser",
    "LogRecord",
    "RecordType",
    "classify_line",
    "OneShot",
    "AppInstaller",
    "AppConfig",
    "InstallationRecord",
]

_lazy_modules = {
    "Holochain": (".holochain", "Holochain"),
    "HolochainOptions": (".holochain", "HolochainOptions"),
    "ConfigOptions": (".holochain", "ConfigOptions"),
    "LifecycleState": (".holochain", "LifecycleState"),
    "SupervisedProcess": (".process_supervisor", "SupervisedProcess"),
    "ExitStatus": (".process_supervisor", "ExitStatus"),
    "ProcessState": (".process_supervisor", "ProcessState"),
    "LineParser": (".line_parser", "LineParser"),
    "LogRecord": (".log_classifier", "LogRecord"),
    "RecordType": (".log_classifier", "RecordType"),
    "classify_line": (".log_classifier", "classify_line"),
    "OneShot": (".one_shot", "OneShot"),
    "AppInstaller": (".installer", "AppInstaller"),
    "AppConfig": (".installer", "AppConfig"),
    "InstallationRecord": (".installer", "InstallationRecord"),
}


def __getattr__(name: str):
    if name in _lazy_modules:
        module_path, attr_name = _lazy_modules[name]
        module = importlib.import_module(module_path, package=__name__)
        value = getattr(module, attr_name)
        globals()[name] = value
        return value
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


def __dir__():
    return sorted(list(globals().keys()) + list(_lazy_modules.keys()))
