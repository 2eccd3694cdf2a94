"""Unit tests for DurableWrite and FileOps."""

import json
import stat
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from gworkspace_credentials.auth.durable_write import DurableWrite, FileOps, WriteStep
from gworkspace_credentials.auth.exceptions import (
    ShuttingDownError,
    TokenSaveError,
    TokenVerificationError,
)
from gworkspace_credentials.auth.temp_files import TemporaryFileTracker

PAYLOAD = json.dumps({"access_token": "new_token", "refresh_token": "refresh"}, indent=2)


def check_record(content: str) -> None:
    if not json.loads(content).get("access_token"):
        raise ValueError("invalid token format")


class FailingRenameOps(FileOps):
    """Rename always fails, as on a filesystem holding the target open."""

    def __init__(self) -> None:
        self.rename_calls = 0

    def replace(self, source: Path, target: Path) -> None:
        self.rename_calls += 1
        raise PermissionError("target is busy")


class VanishingTempOps(FailingRenameOps):
    """Rename fails and the temp file disappears before the copy."""

    def replace(self, source: Path, target: Path) -> None:
        source.unlink(missing_ok=True)
        super().replace(source, target)


class FlakyRenameOps(FileOps):
    """Rename fails a given number of times, then works."""

    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.rename_calls = 0

    def replace(self, source: Path, target: Path) -> None:
        self.rename_calls += 1
        if self.rename_calls <= self.failures:
            raise OSError("transient")
        super().replace(source, target)


class FailingWriteOps(FileOps):
    """Every write fails, as on a full disk."""

    def __init__(self) -> None:
        self.write_calls = 0

    def write_private(self, path: Path, content: str) -> None:
        self.write_calls += 1
        raise OSError("No space left on device")


class CorruptingWriteOps(FileOps):
    """Writes truncate the payload, as a torn write would."""

    def write_private(self, path: Path, content: str) -> None:
        super().write_private(path, content[: len(content) // 2])


@pytest.fixture
def tracker() -> TemporaryFileTracker:
    return TemporaryFileTracker(MagicMock())


def make_write(
    target: Path,
    tracker: TemporaryFileTracker,
    file_ops: FileOps | None = None,
    checkpoint=None,
    payload: str = PAYLOAD,
) -> DurableWrite:
    temp_path = tracker.create(target, "save-tokens-test")
    return DurableWrite(
        target,
        payload,
        temp_path,
        tracker,
        verify=check_record,
        checkpoint=checkpoint,
        attempts=3,
        delay=0,
        file_ops=file_ops,
        log=MagicMock(),
    )


@pytest.mark.unit
class TestFileOps:
    """Tests for the filesystem primitives."""

    def test_should_write_owner_only_file(self, temp_token_path: Path) -> None:
        """Verify written files are readable by the owner only."""
        FileOps().write_private(temp_token_path, "{}")

        assert temp_token_path.read_text() == "{}"
        assert stat.S_IMODE(temp_token_path.stat().st_mode) == 0o600

    def test_should_tighten_permissions_of_existing_file(self, temp_token_path: Path) -> None:
        """Verify rewriting a world-readable file restricts it."""
        temp_token_path.write_text("old")
        temp_token_path.chmod(0o644)

        FileOps().write_private(temp_token_path, "new")

        assert temp_token_path.read_text() == "new"
        assert stat.S_IMODE(temp_token_path.stat().st_mode) == 0o600

    def test_should_create_private_directory(self, tmp_path: Path) -> None:
        """Verify missing directories are created with owner-only access."""
        directory = tmp_path / "a" / "b"

        FileOps().ensure_private_dir(directory)

        assert directory.is_dir()
        assert stat.S_IMODE(directory.stat().st_mode) == 0o700

    def test_should_leave_existing_directory_permissions(self, tmp_path: Path) -> None:
        """Verify an existing shared directory keeps its mode."""
        directory = tmp_path / "shared"
        directory.mkdir()
        directory.chmod(0o755)

        FileOps().ensure_private_dir(directory)

        assert stat.S_IMODE(directory.stat().st_mode) == 0o755

    def test_should_remove_strictly(self, temp_token_path: Path) -> None:
        """Verify remove reports a file that is already gone."""
        temp_token_path.write_text("{}")

        FileOps().remove(temp_token_path)

        assert not temp_token_path.exists()
        with pytest.raises(FileNotFoundError):
            FileOps().remove(temp_token_path)


@pytest.mark.unit
class TestDurableWriteHappyPath:
    """Tests for the rename path."""

    @pytest.mark.asyncio
    async def test_should_replace_target(
        self, temp_token_path: Path, tracker: TemporaryFileTracker
    ) -> None:
        """Verify the target ends up holding the payload."""
        temp_token_path.write_text(json.dumps({"access_token": "old"}))
        write = make_write(temp_token_path, tracker)

        await write.run()

        assert temp_token_path.read_text() == PAYLOAD
        assert stat.S_IMODE(temp_token_path.stat().st_mode) == 0o600

    @pytest.mark.asyncio
    async def test_should_follow_rename_steps(
        self, temp_token_path: Path, tracker: TemporaryFileTracker
    ) -> None:
        """Verify the step sequence without fallback."""
        write = make_write(temp_token_path, tracker)

        await write.run()

        assert write.history == [
            WriteStep.WRITE_TEMP,
            WriteStep.VERIFY_TEMP,
            WriteStep.RENAME,
            WriteStep.CLEANUP,
        ]
        assert write.rename_error is None

    @pytest.mark.asyncio
    async def test_should_leave_no_temp_files(
        self, temp_token_path: Path, tracker: TemporaryFileTracker
    ) -> None:
        """Verify the temp file is consumed and released."""
        write = make_write(temp_token_path, tracker)

        await write.run()

        assert not write.temp_path.exists()
        assert len(tracker) == 0
        assert list(temp_token_path.parent.glob("*.tmp")) == []

    @pytest.mark.asyncio
    async def test_should_retry_transient_rename_failures(
        self, temp_token_path: Path, tracker: TemporaryFileTracker
    ) -> None:
        """Verify rename is retried before falling back."""
        ops = FlakyRenameOps(failures=2)
        write = make_write(temp_token_path, tracker, ops)

        await write.run()

        assert ops.rename_calls == 3
        assert WriteStep.COPY_CONTENTS not in write.history
        assert temp_token_path.read_text() == PAYLOAD


@pytest.mark.unit
class TestDurableWriteFallback:
    """Tests for the copy fallback."""

    @pytest.mark.asyncio
    async def test_should_copy_when_rename_fails(
        self, temp_token_path: Path, tracker: TemporaryFileTracker
    ) -> None:
        """Verify a persistently failing rename falls back to copying."""
        ops = FailingRenameOps()
        write = make_write(temp_token_path, tracker, ops)

        await write.run()

        assert ops.rename_calls == 3
        assert WriteStep.COPY_CONTENTS in write.history
        assert isinstance(write.rename_error, PermissionError)
        assert temp_token_path.read_text() == PAYLOAD
        assert stat.S_IMODE(temp_token_path.stat().st_mode) == 0o600

    @pytest.mark.asyncio
    async def test_should_remove_temp_after_copy(
        self, temp_token_path: Path, tracker: TemporaryFileTracker
    ) -> None:
        """Verify the temp file is deleted once copied."""
        write = make_write(temp_token_path, tracker, FailingRenameOps())

        await write.run()

        assert not write.temp_path.exists()
        assert len(tracker) == 0

    @pytest.mark.asyncio
    async def test_should_write_payload_when_temp_vanished(
        self, temp_token_path: Path, tracker: TemporaryFileTracker
    ) -> None:
        """Verify the payload is written directly if the temp file is gone."""
        write = make_write(temp_token_path, tracker, VanishingTempOps())

        await write.run()

        assert temp_token_path.read_text() == PAYLOAD
        assert len(tracker) == 0


@pytest.mark.unit
class TestDurableWriteFailures:
    """Tests for failing writes."""

    @pytest.mark.asyncio
    async def test_should_raise_save_error_when_writes_fail(
        self, temp_token_path: Path, tracker: TemporaryFileTracker
    ) -> None:
        """Verify write failures surface as TokenSaveError after retries."""
        temp_token_path.write_text(json.dumps({"access_token": "old"}))
        ops = FailingWriteOps()
        write = make_write(temp_token_path, tracker, ops)

        with pytest.raises(TokenSaveError, match="No space left"):
            await write.run()

        assert ops.write_calls == 3
        assert json.loads(temp_token_path.read_text()) == {"access_token": "old"}
        assert len(tracker) == 0

    @pytest.mark.asyncio
    async def test_should_reject_torn_write(
        self, temp_token_path: Path, tracker: TemporaryFileTracker
    ) -> None:
        """Verify a temp file that does not parse never replaces the target."""
        temp_token_path.write_text(json.dumps({"access_token": "old"}))
        write = make_write(temp_token_path, tracker, CorruptingWriteOps())

        with pytest.raises(TokenVerificationError):
            await write.run()

        assert WriteStep.RENAME not in write.history
        assert json.loads(temp_token_path.read_text()) == {"access_token": "old"}
        assert not write.temp_path.exists()
        assert len(tracker) == 0

    @pytest.mark.asyncio
    async def test_should_reject_record_without_access_token(
        self, temp_token_path: Path, tracker: TemporaryFileTracker
    ) -> None:
        """Verify semantic verification failures abort the write."""
        write = make_write(
            temp_token_path, tracker, payload=json.dumps({"refresh_token": "only"})
        )

        with pytest.raises(TokenVerificationError):
            await write.run()

        assert not temp_token_path.exists()

    @pytest.mark.asyncio
    async def test_should_abort_at_checkpoint(
        self, temp_token_path: Path, tracker: TemporaryFileTracker
    ) -> None:
        """Verify a raising checkpoint abandons the write without touching disk."""

        def checkpoint() -> None:
            raise ShuttingDownError("finalizing", "save-tokens-test")

        write = make_write(temp_token_path, tracker, checkpoint=checkpoint)

        with pytest.raises(ShuttingDownError):
            await write.run()

        assert not temp_token_path.exists()
        assert not write.temp_path.exists()
        assert len(tracker) == 0

    @pytest.mark.asyncio
    async def test_should_abort_before_copy_fallback(
        self, temp_token_path: Path, tracker: TemporaryFileTracker
    ) -> None:
        """Verify the copy fallback also honours the checkpoint."""
        calls = []

        def checkpoint() -> None:
            calls.append(True)
            # write and rename pass, copy is refused
            if len(calls) > 2:
                raise ShuttingDownError("finalizing", "save-tokens-test")

        write = make_write(temp_token_path, tracker, FailingRenameOps(), checkpoint=checkpoint)

        with pytest.raises(ShuttingDownError):
            await write.run()

        assert not temp_token_path.exists()
        assert not write.temp_path.exists()
