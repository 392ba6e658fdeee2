"""Exchange channel: write-once artifacts on a shared directory, observed by polling.

Producers publish complete files atomically (temp file + rename), so a
consumer sees either the whole payload or nothing. Consumers treat a missing
or empty file as "not ready yet".

Artifacts are split into two segments with separate roots:

    public   CA certificate, certificate requests and issued certificates
             (directories 0755, files 0644)
    private  CA bundle and its one-time password
             (directories 0700, files 0600)

A channel built without a private root (the leaf role) cannot name private
artifacts at all.
"""

import logging
import os
import tempfile
import threading
import time
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path

from trustboot.errors import ChannelError
from trustboot.metrics import trustboot_metrics

logger = logging.getLogger(__name__)


class Segment(StrEnum):
    PUBLIC = "public"
    PRIVATE = "private"


# (directory mode, file mode)
SEGMENT_MODES = {
    Segment.PUBLIC: (0o755, 0o644),
    Segment.PRIVATE: (0o700, 0o600),
}


@dataclass(frozen=True)
class Artifact:
    segment: Segment
    name: str

    def __str__(self) -> str:
        return f"{self.segment.value}:{self.name}"


CA_CERTIFICATE = Artifact(Segment.PUBLIC, "ca.crt")
CA_BUNDLE = Artifact(Segment.PRIVATE, "ca.p12")
CA_BUNDLE_PASSWORD = Artifact(Segment.PRIVATE, "ca.p12.password")

REQUESTS_DIR = "requests"
ISSUED_DIR = "issued"


def certificate_request(name: str) -> Artifact:
    return Artifact(Segment.PUBLIC, f"{REQUESTS_DIR}/{name}.csr")


def issued_certificate(name: str) -> Artifact:
    return Artifact(Segment.PUBLIC, f"{ISSUED_DIR}/{name}.crt")


@dataclass(frozen=True)
class Ready:
    artifact: Artifact
    payload: bytes
    attempts: int


@dataclass(frozen=True)
class TimedOut:
    artifact: Artifact
    attempts: int


@dataclass(frozen=True)
class Cancelled:
    artifact: Artifact
    attempts: int


PollResult = Ready | TimedOut | Cancelled


class ExchangeChannel:
    """Shared-directory channel between independently started roles."""

    def __init__(
        self,
        public_dir: Path,
        private_dir: Path | None = None,
        cancel_event: threading.Event | None = None,
    ):
        self._roots = {Segment.PUBLIC: public_dir}
        if private_dir is not None:
            self._roots[Segment.PRIVATE] = private_dir
        self.cancel_event = cancel_event or threading.Event()

    def has_segment(self, segment: Segment) -> bool:
        return segment in self._roots

    def path_for(self, artifact: Artifact) -> Path:
        root = self._roots.get(artifact.segment)
        if root is None:
            raise ChannelError(f"{artifact} is not reachable from this role's channel")
        return root / artifact.name

    def read(self, artifact: Artifact) -> bytes | None:
        """Return the payload, or None while the artifact is absent or empty."""
        path = self.path_for(artifact)
        try:
            if path.stat().st_size == 0:
                return None
            return path.read_bytes() or None
        except (FileNotFoundError, NotADirectoryError):
            return None
        except OSError as e:
            raise ChannelError(f"cannot read {artifact} at {path}: {e}") from e

    def exists(self, artifact: Artifact) -> bool:
        return self.read(artifact) is not None

    def publish(self, artifact: Artifact, payload: bytes) -> bool:
        """Atomically publish ``payload``. Returns False if the artifact already exists."""
        if not payload:
            raise ValueError(f"refusing to publish an empty payload for {artifact}")
        if self.exists(artifact):
            logger.debug("artifact_already_published", extra={"artifact": str(artifact)})
            return False

        path = self.path_for(artifact)
        dir_mode, file_mode = SEGMENT_MODES[artifact.segment]
        try:
            self._ensure_dirs(artifact.segment, path.parent, dir_mode)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
            try:
                with os.fdopen(fd, "wb") as fh:
                    fh.write(payload)
                    fh.flush()
                    os.fsync(fh.fileno())
                os.chmod(tmp_name, file_mode)
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise ChannelError(f"cannot publish {artifact} to {path}: {e}") from e

        trustboot_metrics.record_artifact_published(str(artifact))
        logger.info("artifact_published", extra={"artifact": str(artifact), "path": str(path)})
        return True

    def poll(self, artifact: Artifact, attempts: int, interval: float) -> PollResult:
        """Check for ``artifact`` up to ``attempts`` times, ``interval`` seconds apart.

        The wait between checks is interruptible through ``cancel_event``; the
        result reports which of ready, timed out or cancelled happened.
        """
        if attempts < 1:
            raise ValueError("attempts must be at least 1")

        started = time.monotonic()
        result: PollResult | None = None
        for attempt in range(1, attempts + 1):
            if self.cancel_event.is_set():
                result = Cancelled(artifact, attempt - 1)
                break

            payload = self.read(artifact)
            trustboot_metrics.record_poll_attempt(str(artifact))
            if payload is not None:
                result = Ready(artifact, payload, attempt)
                break

            logger.debug(
                "waiting_for_artifact",
                extra={"artifact": str(artifact), "attempt": attempt, "max_attempts": attempts},
            )
            if attempt < attempts and self.cancel_event.wait(interval):
                result = Cancelled(artifact, attempt)
                break

        if result is None:
            result = TimedOut(artifact, attempts)

        trustboot_metrics.record_artifact_wait(
            str(artifact), type(result).__name__.lower(), time.monotonic() - started
        )
        return result

    def list_requests(self) -> list[Artifact]:
        """Certificate requests currently waiting in the public segment."""
        requests_dir = self._roots[Segment.PUBLIC] / REQUESTS_DIR
        try:
            names = sorted(
                p.name for p in requests_dir.iterdir() if p.suffix == ".csr" and p.is_file()
            )
        except FileNotFoundError:
            return []
        except OSError as e:
            raise ChannelError(f"cannot list {requests_dir}: {e}") from e
        return [Artifact(Segment.PUBLIC, f"{REQUESTS_DIR}/{name}") for name in names]

    def _ensure_dirs(self, segment: Segment, directory: Path, mode: int) -> None:
        root = self._roots[segment]
        if not root.is_dir():
            root.mkdir(parents=True, exist_ok=True, mode=mode)
            # mkdir honours the umask; the creator pins the segment's mode
            os.chmod(root, mode)
        directory.mkdir(parents=True, exist_ok=True, mode=mode)
