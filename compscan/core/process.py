"""External process execution with an absolute timeout."""
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path

import structlog

logger = structlog.get_logger('process')


@dataclass
class ProcessResult:
    command: list[str]
    returncode: int | None
    stdout: str = ''
    stderr: str = ''
    elapsed: float = 0.0
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return not self.timed_out and self.returncode == 0


def run_process(
    command: list[str],
    cwd: Path | None = None,
    timeout: float = 3600.0,
    grace_period: float = 10.0,
) -> ProcessResult:
    """
    Runs command and waits for it to finish.

    When the timeout elapses the process is terminated; if it does not exit
    within the grace period it is killed. A timeout is reported in the result
    and never raised.
    """
    start_time = time.time()
    process = subprocess.Popen(
        command,
        cwd=str(cwd) if cwd else None,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        errors='replace',
    )
    try:
        stdout, stderr = process.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        logger.warning(
            'Process timed out, terminating',
            command=' '.join(command),
            timeout=timeout,
            _style='yellow',
        )
        process.terminate()
        try:
            stdout, stderr = process.communicate(timeout=grace_period)
        except subprocess.TimeoutExpired:
            logger.error(
                'Process did not terminate, killing',
                command=' '.join(command),
                _style='bold red',
            )
            process.kill()
            stdout, stderr = process.communicate()
        return ProcessResult(
            command=command,
            returncode=process.returncode,
            stdout=stdout or '',
            stderr=stderr or '',
            elapsed=time.time() - start_time,
            timed_out=True,
        )

    elapsed = time.time() - start_time
    logger.debug(
        'Process finished',
        command=' '.join(command),
        returncode=process.returncode,
        elapsed=f"{elapsed:.3f}s",
    )
    return ProcessResult(
        command=command,
        returncode=process.returncode,
        stdout=stdout or '',
        stderr=stderr or '',
        elapsed=elapsed,
    )
