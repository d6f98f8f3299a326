"""Listener port allocation safe across threads, processes and xdist workers.

Generated node configs need concrete listener ports before any daemon starts.
Ports are claimed with an exclusive lock file (``port_<n>.lock`` holding
``worker:pid:timestamp``) and a bind probe, so concurrent test workers and
concurrently running meshes never receive the same port.
"""

from __future__ import annotations

import os
import socket
import tempfile
import threading
import time
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from meshharness.datastructures.type_aliases import PortNumber

STALE_LOCK_SECONDS = 3600
LOCK_GRACE_SECONDS = 5.0
PORTS_PER_WORKER = 200
MAX_WORKERS = 20


@dataclass(frozen=True, slots=True)
class PortRange:
    """Port range configuration for a usage category."""

    start: int
    end: int
    description: str = ""


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class PortAllocator:
    """File-lock-based port allocator with worker-aware ranges."""

    RANGES = {
        "testing": PortRange(24000, 30000, "Mesh listener ports (6000 ports)"),
    }

    def __init__(self, base_dir: str | None = None) -> None:
        if base_dir is None:
            base_dir = os.environ.get("PYTEST_CURRENT_TEST_DIR", tempfile.gettempdir())

        self.base_dir = Path(base_dir) / "meshharness_port_locks"
        self.base_dir.mkdir(exist_ok=True, parents=True)

        self.worker_id = self._get_worker_id()
        self.worker_offset = self._calculate_worker_offset()

        self._lock = threading.Lock()
        self._allocated_ports: set[int] = set()

        self._cleanup_stale_locks()

    def _get_worker_id(self) -> str:
        return os.environ.get("PYTEST_XDIST_WORKER", "master")

    def _calculate_worker_offset(self) -> int:
        if self.worker_id == "master":
            return 0
        try:
            worker_num = int(self.worker_id.removeprefix("gw")) + 1
        except ValueError:
            worker_num = hash(self.worker_id) % 1000 + 1
        safe_worker_num = ((worker_num - 1) % MAX_WORKERS) + 1
        return safe_worker_num * PORTS_PER_WORKER

    def _lock_owner_is_stale(self, lock_file: Path) -> bool:
        """Return True when the lock holder process is gone."""
        content = lock_file.read_text().strip()
        parts = content.split(":")
        if len(parts) < 3:
            raise ValueError(f"Malformed port lock {lock_file}: {content!r}")
        return not _pid_alive(int(parts[1]))

    def _cleanup_stale_locks(self) -> None:
        now = time.time()
        cleanup_count = 0

        for lock_file in self.base_dir.glob("port_*.lock"):
            try:
                age = now - lock_file.stat().st_mtime
                if age > STALE_LOCK_SECONDS or self._lock_owner_is_stale(lock_file):
                    lock_file.unlink()
                    cleanup_count += 1
            except ValueError:
                if age > LOCK_GRACE_SECONDS:
                    with suppress(OSError):
                        lock_file.unlink()
                        cleanup_count += 1
            except OSError:
                pass

        if cleanup_count:
            logger.debug("Cleaned up {} stale port lock files", cleanup_count)

    def _is_port_available(self, port: int) -> bool:
        """Probe both TCP and UDP so one port serves any listener backend."""
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
                sock.bind(("127.0.0.1", port))
                sock.listen(1)
            with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
                sock.bind(("127.0.0.1", port))
        except OSError:
            return False
        return True

    def _acquire_port_lock(self, port: int) -> bool:
        lock_file = self.base_dir / f"port_{port}.lock"
        try:
            with lock_file.open("x") as handle:
                handle.write(f"{self.worker_id}:{os.getpid()}:{time.time()}\n")
            return True
        except FileExistsError:
            pass

        try:
            if self._lock_owner_is_stale(lock_file):
                lock_file.unlink()
                return self._acquire_port_lock(port)
        except ValueError:
            with suppress(OSError):
                if time.time() - lock_file.stat().st_mtime > LOCK_GRACE_SECONDS:
                    lock_file.unlink()
                    return self._acquire_port_lock(port)
        except OSError:
            pass
        return False

    def _release_port_lock(self, port: int) -> None:
        with suppress(FileNotFoundError):
            (self.base_dir / f"port_{port}.lock").unlink()

    def _claim_port(self, port: int) -> bool:
        if not self._acquire_port_lock(port):
            return False
        if not self._is_port_available(port):
            self._release_port_lock(port)
            return False
        self._allocated_ports.add(port)
        return True

    def _calculate_worker_range(self, category: str) -> tuple[int, int]:
        port_range = self.RANGES[category]
        range_size = port_range.end - port_range.start

        if self.worker_offset >= range_size:
            workers_in_range = max(1, range_size // PORTS_PER_WORKER)
            worker_index = (self.worker_offset // PORTS_PER_WORKER) % workers_in_range
            start_port = port_range.start + worker_index * PORTS_PER_WORKER
        else:
            start_port = port_range.start + self.worker_offset
        end_port = min(start_port + PORTS_PER_WORKER - 1, port_range.end)

        if start_port >= port_range.end or start_port > end_port:
            raise RuntimeError(
                f"Invalid port range for worker {self.worker_id}: "
                f"{start_port}-{end_port}"
            )
        return start_port, end_port

    def get_worker_info(self) -> dict:
        """Return worker metadata and allocated port ranges."""
        ranges = {}
        for name, range_info in self.RANGES.items():
            start_port, end_port = self._calculate_worker_range(name)
            ranges[name] = {
                "start": start_port,
                "end": end_port,
                "description": range_info.description,
            }
        return {
            "worker_id": self.worker_id,
            "worker_offset": self.worker_offset,
            "allocated_ports": sorted(self._allocated_ports),
            "port_ranges": ranges,
        }

    def _check_category(self, category: str) -> None:
        if category not in self.RANGES:
            raise ValueError(
                f"Unknown port category: {category}. Available: {list(self.RANGES.keys())}"
            )

    def allocate_port(
        self, category: str = "testing", preferred_port: int | None = None
    ) -> PortNumber:
        self._check_category(category)

        with self._lock:
            start_port, end_port = self._calculate_worker_range(category)

            if preferred_port and start_port <= preferred_port <= end_port:
                if preferred_port not in self._allocated_ports and self._claim_port(
                    preferred_port
                ):
                    return preferred_port

            for port in range(start_port, end_port + 1):
                if port not in self._allocated_ports and self._claim_port(port):
                    return port

        raise RuntimeError(
            f"No available ports in {category} range ({start_port}-{end_port}) "
            f"for worker {self.worker_id}."
        )

    def release_port(self, port: PortNumber) -> None:
        with self._lock:
            self._allocated_ports.discard(port)
            self._release_port_lock(port)


_port_allocator: PortAllocator | None = None
_port_allocator_lock = threading.Lock()


def get_port_allocator() -> PortAllocator:
    global _port_allocator
    with _port_allocator_lock:
        if _port_allocator is None:
            _port_allocator = PortAllocator()
        return _port_allocator

