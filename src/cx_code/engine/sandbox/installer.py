# ~/repositories/cx-code/src/cx_code/engine/sandbox/installer.py

import asyncio
import importlib
import importlib.metadata
import importlib.util
import re
import sys
from dataclasses import dataclass
from typing import FrozenSet, Iterable, Iterator, List, Set, Tuple, Union

import structlog

from ...config import CodeSettings
from .errors import DependencyInstallError

logger = structlog.get_logger(__name__)

# Modules that ship with every interpreter and must never reach the installer.
BUILTIN_MODULES: FrozenSet[str] = frozenset(sys.stdlib_module_names) | frozenset(
    sys.builtin_module_names
)

_REQUIREMENT_NAME = re.compile(r"^\s*([A-Za-z0-9][A-Za-z0-9._-]*)")


def requirement_name(requirement: str) -> str:
    """`pandas>=2.0` -> `pandas`."""
    match = _REQUIREMENT_NAME.match(requirement)
    return match.group(1) if match else requirement.strip()


def import_name(requirement: str) -> str:
    """The top-level module a requirement is imported as (best effort)."""
    return requirement_name(requirement).split(".")[0].replace("-", "_")


@dataclass(frozen=True)
class ModuleRequest:
    """An ordered set of distinct module names a snippet asked for."""

    names: Tuple[str, ...] = ()

    @classmethod
    def parse(cls, modules: Union[str, Iterable[str], None]) -> "ModuleRequest":
        """Parses `"numpy, requests,numpy"` (or a list of names) into a request."""
        if not modules:
            return cls()
        raw = modules.split(",") if isinstance(modules, str) else modules
        seen: List[str] = []
        for name in raw:
            name = name.strip()
            if name and name not in seen:
                seen.append(name)
        return cls(tuple(seen))

    def without_builtins(self, extra: Iterable[str] = ()) -> "ModuleRequest":
        builtins = BUILTIN_MODULES | frozenset(extra)
        return ModuleRequest(
            tuple(name for name in self.names if import_name(name) not in builtins)
        )

    def __iter__(self) -> Iterator[str]:
        return iter(self.names)

    def __len__(self) -> int:
        return len(self.names)


class PackageInstaller:
    """
    Installs snippet dependencies into the environment of the running
    interpreter, with `pip` or `uv`. Installing a name that is already present
    is a no-op.
    """

    def __init__(self, settings: CodeSettings):
        self.settings = settings
        self._installed: Set[str] = set()

    def is_available(self, requirement: str) -> bool:
        if requirement in self._installed:
            return True
        name = requirement_name(requirement)
        if name != requirement.strip():
            # Version-pinned requests always go through the installer once.
            return False
        try:
            importlib.metadata.distribution(name)
            return True
        except importlib.metadata.PackageNotFoundError:
            pass
        return importlib.util.find_spec(import_name(name)) is not None

    def _command(self, requirements: List[str]) -> List[str]:
        if self.settings.installer == "uv":
            return ["uv", "pip", "install", "--python", sys.executable, *requirements]
        return [sys.executable, "-m", "pip", "install", "--quiet", *requirements]

    async def install(self, requirements: Iterable[str]) -> List[str]:
        """
        Installs every requirement that is not yet available.

        Returns:
            The requirements that were actually installed.

        Raises:
            DependencyInstallError: If the installer could not be started, timed
                out or exited with a non-zero code.
        """
        pending = [r for r in requirements if not self.is_available(r)]
        if not pending:
            logger.debug("installer.nothing_to_install")
            return []

        command = self._command(pending)
        log = logger.bind(requirements=pending, installer=self.settings.installer)
        log.info("installer.install.begin")

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise DependencyInstallError(
                f"The installer '{command[0]}' could not be found.",
                description="Install it or set CX_CODE_INSTALLER to another installer.",
            ) from e

        try:
            _stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.settings.install_timeout
            )
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            raise DependencyInstallError(
                f"Installing {', '.join(pending)} timed out after "
                f"{self.settings.install_timeout} seconds."
            ) from e

        if process.returncode != 0:
            error_output = stderr.decode(errors="replace").strip()
            log.error("installer.install.failed", return_code=process.returncode)
            raise DependencyInstallError(
                f"Installing {', '.join(pending)} failed with exit code "
                f"{process.returncode}:\n{error_output}"
            )

        importlib.invalidate_caches()
        self._installed.update(pending)
        log.info("installer.install.complete")
        return pending
