from __future__ import annotations

import logging
import subprocess
import threading
from collections import deque
from typing import IO

from blocklaunch.common.errors import LaunchError
from blocklaunch.common.types import LaunchSpec


log = logging.getLogger(__name__)
game_log = logging.getLogger("blocklaunch.game")


class ProcessHandle:
    def __init__(self, process: subprocess.Popen, spec: LaunchSpec, tail_lines: int = 200):
        self.process = process
        self.spec = spec
        self._tail: deque[str] = deque(maxlen=tail_lines)
        self._tail_lock = threading.Lock()
        self._reader: threading.Thread | None = None

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def exit_code(self) -> int | None:
        return self.process.poll()

    def poll(self) -> int | None:
        return self.process.poll()

    def is_alive(self) -> bool:
        return self.process.poll() is None

    def wait(self, timeout: float | None = None) -> int:
        code = self.process.wait(timeout=timeout)
        if self._reader is not None:
            self._reader.join(timeout=5)
        return code

    def terminate(self) -> None:
        if self.is_alive():
            log.info("Terminating game process pid=%s", self.pid)
            self.process.terminate()

    def output_tail(self) -> list[str]:
        with self._tail_lock:
            return list(self._tail)

    def _pump(self, stream: IO[str]) -> None:
        try:
            for raw in stream:
                line = raw.rstrip("\r\n")
                with self._tail_lock:
                    self._tail.append(line)
                game_log.info("[%s] %s", self.spec.version_id, line)
        except (OSError, ValueError) as exc:
            log.error("Reading game output failed: %s", exc)
        finally:
            stream.close()
        log.info("Game output closed for %s (exit=%s)", self.spec.version_id, self.process.poll())

    def _start_reader(self) -> None:
        if self.process.stdout is None:
            return
        self._reader = threading.Thread(
            target=self._pump,
            args=(self.process.stdout,),
            daemon=True,
            name=f"blocklaunch-output-{self.pid}",
        )
        self._reader.start()


class ProcessSupervisor:
    def __init__(self, tail_lines: int = 200):
        self.tail_lines = tail_lines

    def launch(self, spec: LaunchSpec) -> ProcessHandle:
        cmd = list(spec.command)
        log.info("Launching %s: %s", spec.version_id, " ".join(cmd))
        try:
            process = subprocess.Popen(
                cmd,
                shell=False,
                cwd=spec.working_dir,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except FileNotFoundError as exc:
            raise LaunchError(f"Runtime executable not found: {cmd[0]}") from exc
        except PermissionError as exc:
            raise LaunchError(f"Runtime executable is not runnable: {cmd[0]}") from exc
        except OSError as exc:
            raise LaunchError(f"Could not start {cmd[0]}: {exc}") from exc

        handle = ProcessHandle(process, spec, tail_lines=self.tail_lines)
        handle._start_reader()
        log.info("Started %s pid=%s", spec.version_id, process.pid)
        return handle
