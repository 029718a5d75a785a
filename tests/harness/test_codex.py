from __future__ import annotations

import pytest

from mush.harness.codex import CodexExecutor
from mush.harness.executor import ExecError, SetupOptions
from mush.harness.providers import ProviderSpec
from tests.helpers import make_job


def test_build_args_without_working_directory() -> None:
    args = CodexExecutor().build_args(make_job(harness="codex"), "/tmp/out.txt", "do it")
    assert args == ["exec", "--dangerously-bypass-approvals-and-sandbox", "-o", "/tmp/out.txt", "do it"]


def test_build_args_with_working_directory() -> None:
    job = make_job(harness="codex", workingDirectory="/srv/repo")
    args = CodexExecutor().build_args(job, "/tmp/out.txt", "do it")
    assert args[2:4] == ["-C", "/srv/repo"]
    assert args[-1] == "do it"


@pytest.mark.anyio
async def test_setup_requires_binary(tmp_path) -> None:
    executor = CodexExecutor(ProviderSpec(name="codex", binary=str(tmp_path / "codex")))
    with pytest.raises(ExecError) as excinfo:
        await executor.setup(SetupOptions())
    assert excinfo.value.reason == "setup_error"
    assert excinfo.value.retry is False


@pytest.mark.anyio
async def test_execute_reads_output_file(tmp_path) -> None:
    script = tmp_path / "codex"
    # Writes the prompt (last argument) to the file passed with -o.
    script.write_text(
        "#!/bin/sh\n"
        'out=""\n'
        "while [ $# -gt 1 ]; do\n"
        '  if [ "$1" = "-o" ]; then out="$2"; fi\n'
        "  shift\n"
        "done\n"
        'echo "working"\n'
        'printf "done: %s\\n" "$1" > "$out"\n',
        encoding="utf-8",
    )
    script.chmod(0o755)
    screen: list[bytes] = []
    executor = CodexExecutor(ProviderSpec(name="codex", binary=str(script)))
    await executor.setup(SetupOptions(write=screen.append))

    result = await executor.execute(make_job(harness="codex", renderedInstruction="ship it"), timeout=10)

    assert result.output["success"] is True
    assert result.output["output"] == "done: ship it"
    assert b"working\r\n" in b"".join(screen)


@pytest.mark.anyio
async def test_execute_non_zero_exit(tmp_path) -> None:
    script = tmp_path / "codex"
    script.write_text("#!/bin/sh\nexit 4\n", encoding="utf-8")
    script.chmod(0o755)
    executor = CodexExecutor(ProviderSpec(name="codex", binary=str(script)))
    await executor.setup(SetupOptions())
    with pytest.raises(ExecError) as excinfo:
        await executor.execute(make_job(harness="codex", renderedInstruction="x"), timeout=10)
    assert excinfo.value.reason == "codex_error"
    assert "code 4" in excinfo.value.message
