"""
Log aggregation and tailing for services.
"""
import os
import time
from typing import Callable, Dict, IO, Iterator, List, Optional, Tuple


class LogAggregator:
    """
    Aggregates and tails logs from multiple service log files.
    """
    def __init__(self, log_dir: str):
        """
        Initializes the log aggregator.

        :param log_dir: The directory where log files are stored.
        """
        self.log_dir = log_dir

    def path(self, service: str) -> str:
        return os.path.join(self.log_dir, f"{service}.log")

    def read(self, service_names: List[str], tail: Optional[int] = None) -> Iterator[Tuple[str, str]]:
        """
        Yields (service, line) for the existing logs of ``service_names``,
        the last ``tail`` lines of each when given.
        """
        for name in service_names:
            path = self.path(name)
            if not os.path.exists(path):
                continue
            with open(path, errors="replace") as f:
                lines = f.read().splitlines()
            if tail is not None:
                lines = lines[-tail:] if tail else []
            for line in lines:
                yield name, line

    def follow(self, service_names: List[str], emit: Callable[[str, str], None],
               should_stop: Callable[[], bool] = lambda: False,
               poll_interval: float = 0.1) -> None:
        """
        Tails the logs of ``service_names`` from their current end, calling
        ``emit(service, line)`` for each new line until ``should_stop()``.
        """
        files: Dict[str, IO[str]] = {}
        try:
            while not should_stop():
                for name in service_names:
                    if name not in files:
                        path = self.path(name)
                        if os.path.exists(path):
                            f = open(path, errors="replace")
                            f.seek(0, os.SEEK_END)
                            files[name] = f
                    if name in files:
                        line = files[name].readline()
                        while line:
                            emit(name, line.rstrip("\n"))
                            line = files[name].readline()
                time.sleep(poll_interval)
        finally:
            for f in files.values():
                f.close()
