"""Tests for graceful_shutdown."""

import logging
import signal

import anyio
import pytest

from parley.hub import RealtimeHub
from parley.shutdown import graceful_shutdown

pytestmark = pytest.mark.anyio

TIMEOUT_SECONDS = 2


class MockCloseable:
    def __init__(self) -> None:
        self.close_called_count = 0

    @property
    def closed(self) -> bool:
        return self.close_called_count > 0

    async def close(self) -> None:
        self.close_called_count += 1


class BrokenCloseable:
    async def close(self) -> None:
        msg = "already gone"
        raise RuntimeError(msg)


def fire(sig: signal.Signals = signal.SIGTERM) -> None:
    """Invoke the installed handler directly instead of sending a real signal."""
    handler = signal.getsignal(sig)
    assert callable(handler)
    handler(sig, None)


class TestGracefulShutdown:
    async def test_normal_exit_does_not_close(self) -> None:
        closeable = MockCloseable()

        async with graceful_shutdown(closeable) as stopping:
            await anyio.sleep(0.01)

        assert not closeable.closed
        assert not stopping.is_set()

    async def test_signal_closes_everything_once(self) -> None:
        first, second = MockCloseable(), MockCloseable()

        async with graceful_shutdown(first, second) as stopping:
            fire()
            fire(signal.SIGINT)
            await anyio.sleep(0.05)

            assert stopping.is_set()

        assert first.close_called_count == 1
        assert second.close_called_count == 1

    async def test_close_errors_are_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        after = MockCloseable()

        async with graceful_shutdown(BrokenCloseable(), after):
            fire()
            await anyio.sleep(0.05)

        assert after.closed
        [record] = [r for r in caplog.records if r.levelno == logging.ERROR]
        assert "during shutdown" in record.getMessage()

    async def test_restores_original_handlers(self) -> None:
        original_sigterm = signal.getsignal(signal.SIGTERM)
        original_sigint = signal.getsignal(signal.SIGINT)

        async with graceful_shutdown(MockCloseable()):
            assert signal.getsignal(signal.SIGTERM) != original_sigterm

        assert signal.getsignal(signal.SIGTERM) == original_sigterm
        assert signal.getsignal(signal.SIGINT) == original_sigint

    async def test_custom_signals(self) -> None:
        original_sigterm = signal.getsignal(signal.SIGTERM)

        async with graceful_shutdown(MockCloseable(), signals=(signal.SIGUSR1,)):
            assert signal.getsignal(signal.SIGUSR1) is not signal.SIG_DFL
            assert signal.getsignal(signal.SIGTERM) == original_sigterm

    async def test_signal_stops_running_hub(self, hub: RealtimeHub) -> None:
        with anyio.fail_after(TIMEOUT_SECONDS):
            async with anyio.create_task_group() as tg:
                tg.start_soon(hub.run)
                await anyio.sleep(0.01)
                async with graceful_shutdown(hub) as stopping:
                    fire()
                    await stopping.wait()
                    await anyio.sleep(0.05)

        assert not hub.running
