"""Unit tests for the ansible-playbook runner, driven by stub shell scripts."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path

import pytest

from db_install_worker.config.models import AnsibleConfig
from db_install_worker.provisioning.errors import (
    PlaybookNotFoundError,
    ProcessLaunchError,
    ProcessNonZeroExitError,
    ProcessTimeoutError,
)
from db_install_worker.provisioning.runner import (
    TRUNCATION_MARKER,
    OutputCapture,
    PlaybookRunner,
)

AnsibleFactory = Callable[..., AnsibleConfig]


@pytest.fixture
def inventory(tmp_path: Path) -> Path:
    path = tmp_path / "vm_1_db_test.ini"
    path.write_text("127.0.0.1\n")
    return path


@pytest.fixture
def playbook(playbook_dir: Path) -> Path:
    return playbook_dir / "postgresql.yml"


class TestOutputCapture:
    def test_under_limit(self):
        cap = OutputCapture(limit=10)
        cap.feed(b"hello")
        assert cap.text() == "hello"
        assert not cap.truncated

    def test_exactly_at_limit_not_truncated(self):
        cap = OutputCapture(limit=5)
        cap.feed(b"hello")
        assert cap.text() == "hello"

    def test_over_limit_keeps_prefix(self):
        cap = OutputCapture(limit=4)
        cap.feed(b"ab")
        cap.feed(b"cdef")
        cap.feed(b"gh")
        assert cap.truncated
        assert cap.text() == "abcd" + TRUNCATION_MARKER

    @pytest.mark.parametrize("limit", [5, 6])
    def test_cut_inside_multibyte_character(self, limit: int):
        cap = OutputCapture(limit=limit)
        cap.feed("abcdéxyz".encode())
        text = cap.text()
        assert text.startswith("abcd")
        assert "�" not in text
        assert len(text.encode()) <= limit + len(TRUNCATION_MARKER)

    def test_cut_mid_character_drops_it_whole(self):
        cap = OutputCapture(limit=5)
        cap.feed("abcd€".encode())
        assert cap.text() == "abcd" + TRUNCATION_MARKER

    def test_sink_sees_lines_across_chunks(self):
        lines: list[str] = []
        cap = OutputCapture(limit=3, sink=lines.append)
        cap.feed(b"one\ntw")
        cap.feed(b"o\r\nthree")
        assert lines == ["one", "two"]
        cap.close()
        assert lines == ["one", "two", "three"]


class TestPlaybookRunner:
    async def test_success(
        self, ansible_factory: AnsibleFactory, inventory: Path, playbook: Path
    ):
        runner = PlaybookRunner(ansible_factory("printf 'OK'"))
        result = await runner.run(inventory, playbook, shutdown=asyncio.Event())
        assert result.exit_code == 0
        assert result.output == "OK"

    async def test_passes_inventory_and_playbook(
        self, ansible_factory: AnsibleFactory, inventory: Path, playbook: Path
    ):
        runner = PlaybookRunner(ansible_factory('echo "$@"'))
        result = await runner.run(inventory, playbook, shutdown=asyncio.Event())
        assert result.output == f"-i {inventory} {playbook}\n"

    def test_build_command(self, tmp_path: Path):
        runner = PlaybookRunner(AnsibleConfig(command=["ansible-playbook", "-v"]))
        cmd = runner.build_command(tmp_path / "inv.ini", tmp_path / "pb.yml")
        assert cmd == [
            "ansible-playbook",
            "-v",
            "-i",
            str(tmp_path / "inv.ini"),
            str(tmp_path / "pb.yml"),
        ]

    async def test_stderr_is_captured(
        self, ansible_factory: AnsibleFactory, inventory: Path, playbook: Path
    ):
        runner = PlaybookRunner(ansible_factory("echo oops >&2"))
        result = await runner.run(inventory, playbook, shutdown=asyncio.Event())
        assert result.output == "oops\n"

    async def test_nonzero_exit(
        self, ansible_factory: AnsibleFactory, inventory: Path, playbook: Path
    ):
        runner = PlaybookRunner(ansible_factory("echo failed; exit 3"))
        with pytest.raises(ProcessNonZeroExitError) as exc_info:
            await runner.run(inventory, playbook, shutdown=asyncio.Event())
        assert exc_info.value.exit_code == 3
        assert exc_info.value.output == "failed\n"
        assert str(exc_info.value) == "ansible-playbook exited with code 3"

    async def test_killed_by_signal(
        self, ansible_factory: AnsibleFactory, inventory: Path, playbook: Path
    ):
        runner = PlaybookRunner(ansible_factory("kill -9 $$"))
        with pytest.raises(ProcessNonZeroExitError) as exc_info:
            await runner.run(inventory, playbook, shutdown=asyncio.Event())
        assert exc_info.value.exit_code == 137

    async def test_timeout_keeps_partial_output(
        self, ansible_factory: AnsibleFactory, inventory: Path, playbook: Path
    ):
        config = ansible_factory("echo started; sleep 30", timeout_seconds=0.5)
        runner = PlaybookRunner(config)
        with pytest.raises(ProcessTimeoutError) as exc_info:
            await runner.run(inventory, playbook, shutdown=asyncio.Event())
        assert exc_info.value.exit_code == 124
        assert exc_info.value.output == "started\n"
        assert "timed out after 0.5s" in str(exc_info.value)

    async def test_timeout_escalates_to_sigkill(
        self, ansible_factory: AnsibleFactory, inventory: Path, playbook: Path
    ):
        body = "trap '' TERM; echo stubborn; while :; do sleep 1; done"
        config = ansible_factory(body, timeout_seconds=0.5, kill_grace_seconds=0.2)
        runner = PlaybookRunner(config)
        with pytest.raises(ProcessTimeoutError) as exc_info:
            await runner.run(inventory, playbook, shutdown=asyncio.Event())
        assert exc_info.value.exit_code == 124

    async def test_output_truncated(
        self, ansible_factory: AnsibleFactory, inventory: Path, playbook: Path
    ):
        config = ansible_factory(
            "head -c 20000 /dev/zero | tr '\\0' 'a'", max_output_bytes=100
        )
        result = await PlaybookRunner(config).run(
            inventory, playbook, shutdown=asyncio.Event()
        )
        assert result.output == "a" * 100 + TRUNCATION_MARKER

    async def test_launch_error(
        self,
        ansible_factory: AnsibleFactory,
        tmp_path: Path,
        inventory: Path,
        playbook: Path,
    ):
        config = ansible_factory(command=[str(tmp_path / "no-such-tool")])
        with pytest.raises(ProcessLaunchError) as exc_info:
            await PlaybookRunner(config).run(
                inventory, playbook, shutdown=asyncio.Event()
            )
        assert exc_info.value.exit_code == 1
        assert str(exc_info.value).startswith("start ")

    async def test_playbook_not_found(
        self, ansible_factory: AnsibleFactory, tmp_path: Path, inventory: Path
    ):
        runner = PlaybookRunner(ansible_factory())
        with pytest.raises(PlaybookNotFoundError) as exc_info:
            await runner.run(
                inventory, tmp_path / "missing.yml", shutdown=asyncio.Event()
            )
        assert exc_info.value.exit_code == 127

    async def test_shutdown_before_launch(
        self, ansible_factory: AnsibleFactory, inventory: Path, playbook: Path
    ):
        shutdown = asyncio.Event()
        shutdown.set()
        with pytest.raises(ProcessTimeoutError, match="before launch"):
            await PlaybookRunner(ansible_factory()).run(
                inventory, playbook, shutdown=shutdown
            )

    async def test_shutdown_during_run(
        self, ansible_factory: AnsibleFactory, inventory: Path, playbook: Path
    ):
        runner = PlaybookRunner(ansible_factory("echo working; sleep 30"))
        shutdown = asyncio.Event()
        task = asyncio.create_task(runner.run(inventory, playbook, shutdown=shutdown))
        await asyncio.sleep(0.3)
        shutdown.set()
        with pytest.raises(ProcessTimeoutError, match="worker shutting down") as exc:
            await asyncio.wait_for(task, timeout=5)
        assert exc.value.exit_code == 124
        assert exc.value.output == "working\n"

    async def test_sink_receives_lines(
        self,
        ansible_factory: AnsibleFactory,
        inventory: Path,
        playbook: Path,
    ):
        seen: dict[int, list[str]] = {}

        def factory(request_id: int) -> Callable[[str], None]:
            return seen.setdefault(request_id, []).append

        runner = PlaybookRunner(
            ansible_factory("echo one; echo two"), sink_factory=factory
        )
        await runner.run(inventory, playbook, shutdown=asyncio.Event(), request_id=9)
        assert seen == {9: ["one", "two"]}
