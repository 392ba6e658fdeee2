"""Tests for the exchange channel: atomic publish, segment scoping and polling."""

import stat
import threading
from unittest.mock import patch

import pytest

from trustboot.errors import ChannelError
from trustboot.exchange import (
    CA_BUNDLE,
    CA_BUNDLE_PASSWORD,
    CA_CERTIFICATE,
    Cancelled,
    ExchangeChannel,
    Ready,
    TimedOut,
    certificate_request,
    issued_certificate,
)


class RecordingEvent:
    """Cancellation event that never fires but records every wait."""

    def __init__(self, fire_after: int | None = None):
        self.waits: list[float] = []
        self.fire_after = fire_after

    def is_set(self) -> bool:
        return False

    def wait(self, timeout: float) -> bool:
        self.waits.append(timeout)
        return self.fire_after is not None and len(self.waits) >= self.fire_after


@pytest.fixture
def channel(tmp_path):
    return ExchangeChannel(tmp_path / "public", tmp_path / "private")


class TestPublish:
    def test_publish_and_read(self, channel):
        assert channel.publish(CA_CERTIFICATE, b"pem") is True
        assert channel.read(CA_CERTIFICATE) == b"pem"

    def test_publish_existing_is_noop(self, channel):
        channel.publish(CA_CERTIFICATE, b"first")

        assert channel.publish(CA_CERTIFICATE, b"second") is False
        assert channel.read(CA_CERTIFICATE) == b"first"

    def test_publish_rejects_empty_payload(self, channel):
        with pytest.raises(ValueError):
            channel.publish(CA_CERTIFICATE, b"")

    def test_publish_leaves_no_temporary_files(self, channel, tmp_path):
        channel.publish(CA_CERTIFICATE, b"pem")

        assert [p.name for p in (tmp_path / "public").iterdir()] == ["ca.crt"]

    def test_failed_write_leaves_nothing_visible(self, channel, tmp_path):
        with patch("trustboot.exchange.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(ChannelError, match="disk full"):
                channel.publish(CA_CERTIFICATE, b"pem")

        assert channel.read(CA_CERTIFICATE) is None
        assert list((tmp_path / "public").iterdir()) == []

    def test_segment_permissions(self, channel, tmp_path):
        channel.publish(CA_CERTIFICATE, b"pem")
        channel.publish(CA_BUNDLE, b"p12")

        assert stat.S_IMODE((tmp_path / "public").stat().st_mode) == 0o755
        assert stat.S_IMODE((tmp_path / "public" / "ca.crt").stat().st_mode) == 0o644
        assert stat.S_IMODE((tmp_path / "private").stat().st_mode) == 0o700
        assert stat.S_IMODE((tmp_path / "private" / "ca.p12").stat().st_mode) == 0o600

    def test_nested_artifacts(self, channel):
        channel.publish(certificate_request("admin-client-cert"), b"csr")

        assert channel.list_requests() == [certificate_request("admin-client-cert")]
        assert channel.read(issued_certificate("admin-client-cert")) is None


class TestSegments:
    """A channel without a private root cannot reach private artifacts."""

    def test_leaf_channel_cannot_name_private_artifacts(self, tmp_path):
        leaf_channel = ExchangeChannel(tmp_path / "public")

        with pytest.raises(ChannelError, match="not reachable"):
            leaf_channel.read(CA_BUNDLE)
        with pytest.raises(ChannelError):
            leaf_channel.read(CA_BUNDLE_PASSWORD)

    def test_private_artifacts_stay_out_of_public_root(self, channel, tmp_path):
        channel.publish(CA_BUNDLE, b"p12")
        channel.publish(CA_BUNDLE_PASSWORD, b"secret")

        assert not (tmp_path / "public").exists()

    def test_empty_file_is_not_ready(self, channel, tmp_path):
        (tmp_path / "public").mkdir()
        (tmp_path / "public" / "ca.crt").touch()

        assert channel.read(CA_CERTIFICATE) is None
        assert channel.exists(CA_CERTIFICATE) is False

    def test_unreadable_artifact_is_a_channel_error(self, channel):
        channel.publish(CA_CERTIFICATE, b"pem")

        with patch("pathlib.Path.read_bytes", side_effect=PermissionError("denied")):
            with pytest.raises(ChannelError, match="denied"):
                channel.read(CA_CERTIFICATE)


class TestPoll:
    def test_ready_on_first_attempt(self, channel):
        channel.publish(CA_CERTIFICATE, b"pem")

        result = channel.poll(CA_CERTIFICATE, attempts=30, interval=2.0)

        assert result == Ready(CA_CERTIFICATE, b"pem", 1)

    def test_timeout_after_exact_attempts(self, tmp_path):
        """30 attempts at 2s: 30 checks and 29 waits, so about 58s before giving up."""
        event = RecordingEvent()
        channel = ExchangeChannel(tmp_path / "public", tmp_path / "private", cancel_event=event)

        with patch.object(channel, "read", wraps=channel.read) as read:
            result = channel.poll(CA_BUNDLE, attempts=30, interval=2.0)

        assert result == TimedOut(CA_BUNDLE, 30)
        assert read.call_count == 30
        assert event.waits == [2.0] * 29
        assert 58 <= sum(event.waits) <= 62

    def test_artifact_appearing_mid_poll(self, tmp_path):
        channel = ExchangeChannel(tmp_path / "public")
        event = RecordingEvent()
        channel.cancel_event = event
        original_wait = event.wait

        def publish_on_third_wait(timeout):
            if len(event.waits) == 2:
                channel.publish(CA_CERTIFICATE, b"late")
            return original_wait(timeout)

        event.wait = publish_on_third_wait

        result = channel.poll(CA_CERTIFICATE, attempts=10, interval=2.0)

        assert isinstance(result, Ready)
        assert result.payload == b"late"
        assert result.attempts == 4

    def test_cancelled_during_wait(self, tmp_path):
        event = RecordingEvent(fire_after=3)
        channel = ExchangeChannel(tmp_path / "public", cancel_event=event)

        result = channel.poll(CA_CERTIFICATE, attempts=30, interval=2.0)

        assert result == Cancelled(CA_CERTIFICATE, 3)

    def test_cancelled_before_start(self, tmp_path):
        event = threading.Event()
        event.set()
        channel = ExchangeChannel(tmp_path / "public", cancel_event=event)

        assert channel.poll(CA_CERTIFICATE, attempts=5, interval=2.0) == Cancelled(
            CA_CERTIFICATE, 0
        )

    def test_cancel_from_another_thread(self, tmp_path):
        """A real wait is interrupted promptly when shutdown sets the event."""
        event = threading.Event()
        channel = ExchangeChannel(tmp_path / "public", cancel_event=event)
        timer = threading.Timer(0.05, event.set)
        timer.start()

        result = channel.poll(CA_CERTIFICATE, attempts=1000, interval=10.0)
        timer.join()

        assert isinstance(result, Cancelled)
        assert result.attempts == 1

    def test_attempts_must_be_positive(self, channel):
        with pytest.raises(ValueError):
            channel.poll(CA_CERTIFICATE, attempts=0, interval=1.0)
