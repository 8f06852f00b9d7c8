import asyncio
import sys
from unittest.mock import AsyncMock, MagicMock

import pytest

from cx_code.config import CodeSettings
from cx_code.engine.sandbox.errors import DependencyInstallError
from cx_code.engine.sandbox.installer import (
    ModuleRequest,
    PackageInstaller,
    import_name,
    requirement_name,
)


def _process(returncode: int = 0, stderr: bytes = b"") -> MagicMock:
    process = MagicMock()
    process.returncode = returncode
    process.communicate = AsyncMock(return_value=(b"", stderr))
    process.wait = AsyncMock(return_value=returncode)
    return process


def test_requirement_and_import_names():
    assert requirement_name("pandas>=2.0") == "pandas"
    assert requirement_name(" python-dateutil ") == "python-dateutil"
    assert import_name("python-dateutil") == "python_dateutil"
    assert import_name("zope.interface") == "zope"


def test_module_request_parse_dedupes_in_order():
    """Unit Test: Verifies names are trimmed, blanks dropped and duplicates removed."""
    request = ModuleRequest.parse(" numpy, requests,, numpy ,arrow")

    assert request.names == ("numpy", "requests", "arrow")
    assert ModuleRequest.parse(["a", "a", "b"]).names == ("a", "b")
    assert len(ModuleRequest.parse(None)) == 0
    assert len(ModuleRequest.parse("")) == 0


def test_module_request_filters_builtins():
    request = ModuleRequest.parse("json, asyncio, numpy, os, internal-tool")

    assert list(request.without_builtins()) == ["numpy", "internal-tool"]
    assert list(request.without_builtins(["internal_tool"])) == ["numpy"]


@pytest.mark.asyncio
async def test_install_skips_available_packages(mocker):
    """Unit Test: Verifies nothing is spawned when every requirement is importable."""
    spawn = mocker.patch("asyncio.create_subprocess_exec", new_callable=AsyncMock)
    installer = PackageInstaller(CodeSettings())

    assert await installer.install(["pytest", "yaml"]) == []
    spawn.assert_not_awaited()


@pytest.mark.asyncio
async def test_install_is_idempotent(mocker):
    spawn = mocker.patch(
        "asyncio.create_subprocess_exec", new_callable=AsyncMock, return_value=_process()
    )
    installer = PackageInstaller(CodeSettings())

    assert await installer.install(["not-a-real-package-xyz"]) == ["not-a-real-package-xyz"]
    assert await installer.install(["not-a-real-package-xyz"]) == []

    spawn.assert_awaited_once()
    command = spawn.await_args.args
    assert command[:4] == (sys.executable, "-m", "pip", "install")
    assert command[-1] == "not-a-real-package-xyz"


@pytest.mark.asyncio
async def test_uv_installer_command(mocker):
    spawn = mocker.patch(
        "asyncio.create_subprocess_exec", new_callable=AsyncMock, return_value=_process()
    )
    installer = PackageInstaller(CodeSettings(installer="uv"))

    await installer.install(["not-a-real-package-xyz==1.0"])

    assert spawn.await_args.args == (
        "uv",
        "pip",
        "install",
        "--python",
        sys.executable,
        "not-a-real-package-xyz==1.0",
    )


@pytest.mark.asyncio
async def test_failed_install_raises(mocker):
    mocker.patch(
        "asyncio.create_subprocess_exec",
        new_callable=AsyncMock,
        return_value=_process(1, b"ERROR: No matching distribution"),
    )

    with pytest.raises(DependencyInstallError) as exc_info:
        await PackageInstaller(CodeSettings()).install(["not-a-real-package-xyz"])

    assert "exit code 1" in exc_info.value.message
    assert "No matching distribution" in exc_info.value.message


@pytest.mark.asyncio
async def test_missing_installer_raises(mocker):
    mocker.patch(
        "asyncio.create_subprocess_exec",
        new_callable=AsyncMock,
        side_effect=FileNotFoundError("uv"),
    )

    with pytest.raises(DependencyInstallError, match="could not be found"):
        await PackageInstaller(CodeSettings(installer="uv")).install(
            ["not-a-real-package-xyz"]
        )


@pytest.mark.asyncio
async def test_install_timeout_kills_the_process(mocker):
    process = _process()
    process.communicate = AsyncMock(side_effect=asyncio.TimeoutError)
    mocker.patch(
        "asyncio.create_subprocess_exec", new_callable=AsyncMock, return_value=process
    )

    with pytest.raises(DependencyInstallError, match="timed out"):
        await PackageInstaller(CodeSettings(install_timeout=1)).install(
            ["not-a-real-package-xyz"]
        )

    process.kill.assert_called_once()
