"""
DependencyResolver: capabilities fragments ask for by name.

A fragment calls `require("requests")`. The first request in a process tries
to import the module. If the module is not installed, the resolver installs
it with pip and stops the process: a fresh interpreter is needed before the
new distribution is importable, so the capability is never handed out in the
run that installed it. A failed install stops the process too, with an
ordinary error status; either way pip runs at most once per name.
"""
from __future__ import annotations

import subprocess
import sys
import threading
from importlib import import_module
from typing import Any, Callable, Dict, List, Optional

from ..errors import InstallFailed, RestartRequired
from .schema import Resolution, ResolutionStatus


Importer = Callable[[str], Any]
Installer = Callable[[str], None]


def pip_install(target: str) -> None:
    """Install a distribution into the running interpreter's environment."""
    subprocess.run(
        [sys.executable, "-m", "pip", "install", target],
        check=True,
    )


def is_missing(name: str, exc: ModuleNotFoundError) -> bool:
    """True when `exc` says `name` itself (or a parent package) is absent.

    A module that is installed but fails on one of *its own* missing
    imports is a broken capability, not an uninstalled one.
    """
    missing = exc.name
    if not missing:
        return False
    return name == missing or name.startswith(missing + ".")


class DependencyResolver:
    def __init__(
        self,
        importer: Importer = import_module,
        installer: Installer = pip_install,
        output_sink: Optional[Callable[[str], None]] = None,
    ) -> None:
        self._import = importer
        self._install = installer
        self._output_sink = output_sink
        self._resolutions: Dict[str, Resolution] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()
        self.install_log: List[str] = []

    def _emit(self, content: str) -> None:
        if self._output_sink:
            self._output_sink(content)
        else:
            print(content, file=sys.stderr)

    def _lock_for(self, name: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(name)
            if lock is None:
                lock = self._locks[name] = threading.Lock()
            return lock

    def acquire(self, name: str, install_hint: Optional[str] = None) -> Resolution:
        """
        Resolve `name` to a tagged Resolution.

        Memoized per name; concurrent callers share one attempt. Failures
        other than "not installed" propagate and are not memoized.
        """
        cached = self._resolutions.get(name)
        if cached is not None:
            return cached

        with self._lock_for(name):
            cached = self._resolutions.get(name)
            if cached is not None:
                return cached

            try:
                handle = self._import(name)
            except ModuleNotFoundError as exc:
                if not is_missing(name, exc):
                    raise
                resolution = self._install_for(name, install_hint or name)
            else:
                resolution = Resolution(
                    name=name, status=ResolutionStatus.READY, handle=handle
                )

            self._resolutions[name] = resolution
            return resolution

    def _install_for(self, name: str, target: str) -> Resolution:
        self._emit(f"[*] Capability {name!r} not installed; installing {target!r}")
        try:
            self._install(target)
        except Exception as exc:
            self._emit(f"✗ Installing {target!r} failed: {type(exc).__name__}: {exc}")
            return Resolution(
                name=name,
                status=ResolutionStatus.INSTALL_FAILED,
                install_target=target,
                error=f"{type(exc).__name__}: {exc}",
            )
        self.install_log.append(target)
        self._emit(f"[*] Installed {target!r}; restart required")
        return Resolution(
            name=name,
            status=ResolutionStatus.NEEDS_RESTART,
            install_target=target,
        )

    def resolve(self, name: str, install_hint: Optional[str] = None) -> Any:
        """
        Return the capability handle, or stop the process.

        RestartRequired (after an install) and InstallFailed (after a failed
        one) are SystemExit: fragment isolation does not absorb them.
        """
        resolution = self.acquire(name, install_hint)
        if resolution.ready:
            return resolution.handle
        if resolution.status == ResolutionStatus.INSTALL_FAILED:
            raise InstallFailed(name, resolution.install_target or name, resolution.error or "")
        raise RestartRequired(name, resolution.install_target or name)

    def pending_restart(self) -> bool:
        return any(
            r.status == ResolutionStatus.NEEDS_RESTART for r in self._resolutions.values()
        )
