"""
Log relay: fans a container's combined output stream out to two sinks.

- Operational log: logger "appbuilder.container", one record per output
  line, tagged with the build id.
- Durable build log: <logs_dir>/<build_id>.log opened in append mode, written
  byte-for-byte in arrival order, so its content is the full concatenation
  of the stream (and of earlier attachments, if any).

The relay ends when the stream ends. Both sinks are closed before pump()
returns.
"""
import logging
from pathlib import Path
from typing import Iterable, Optional

from appbuilder.core.errors import BackendError

logger = logging.getLogger(__name__)

container_logger = logging.getLogger("appbuilder.container")

# Longest single operational log record; the durable log is never cut
MAX_LINE_CHARS = 8192


class LogRelay:
    """Relays one build's container output."""

    def __init__(self, build_id: str, log_path: Path, sink: Optional[logging.Logger] = None):
        self.build_id = build_id
        self.log_path = Path(log_path)
        self._sink = sink or container_logger
        self.bytes_written = 0
        self.lines_emitted = 0

    def _emit(self, raw: bytes) -> None:
        text = raw.decode("utf-8", errors="replace").rstrip("\r")
        if len(text) > MAX_LINE_CHARS:
            text = text[:MAX_LINE_CHARS] + "... (truncated)"
        self._sink.info(f"[{self.build_id}] {text}", extra={"build_id": self.build_id})
        self.lines_emitted += 1

    def pump(self, chunks: Iterable[bytes]) -> int:
        """
        Consume the stream until it ends.

        Returns:
            Number of bytes appended to the durable log

        Raises:
            OSError: If the durable log cannot be written
        """
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        pending = b""

        with open(self.log_path, "ab") as log_file:
            try:
                for chunk in chunks:
                    if isinstance(chunk, str):
                        chunk = chunk.encode("utf-8")
                    if not chunk:
                        continue

                    log_file.write(chunk)
                    log_file.flush()
                    self.bytes_written += len(chunk)

                    pending += chunk
                    *lines, pending = pending.split(b"\n")
                    for line in lines:
                        self._emit(line)
            except BackendError as e:
                logger.warning(
                    f"log_stream_interrupted build_id={self.build_id} error={e}",
                    extra={"build_id": self.build_id},
                )
            finally:
                if pending:
                    self._emit(pending)

        logger.info(
            f"log_stream_closed build_id={self.build_id} "
            f"bytes={self.bytes_written} lines={self.lines_emitted}",
            extra={"build_id": self.build_id},
        )
        return self.bytes_written
