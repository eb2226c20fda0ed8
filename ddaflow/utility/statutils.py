from threading import Thread, Event
from typing import Sequence

import psutil


class ResourceMonitor(Thread):
    """Sample cpu and memory usage of the current process and all of its children (the external tool) while
    the with block runs. `usage` is filled when leaving the block.
    """
    STATIC_ATTRS = ['cpu_times']
    DYNAMIC_ATTRS = ['cpu_percent', 'num_threads', 'memory_percent']

    def __init__(self, interval: float = 1.0, **kwargs):
        super().__init__(daemon=True, **kwargs)
        self.interval = interval
        self.stopped = Event()
        self.num_samples = 0
        self.peak_rss = 0
        self.usage = {}

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stopped.set()
        self.join()

    def run(self) -> None:
        start = self.collect(self.STATIC_ATTRS)
        dynamic = {}
        while not self.stopped.wait(self.interval):
            for k, v in self.collect(self.DYNAMIC_ATTRS).items():
                dynamic[k] = dynamic.get(k, 0) + v
            self.peak_rss = max(self.peak_rss, self.rss())
            self.num_samples += 1
        if self.num_samples:
            dynamic = {k: v / self.num_samples for k, v in dynamic.items()}
        end = self.collect(self.STATIC_ATTRS)
        static = {k: v - start.get(k, 0) for k, v in end.items()}
        self.usage = {**static, **dynamic, 'peak_rss': self.peak_rss}

    @staticmethod
    def processes():
        proc = psutil.Process()
        return [proc] + proc.children(recursive=True)

    @classmethod
    def rss(cls) -> int:
        total = 0
        for p in cls.processes():
            try:
                total += p.memory_info().rss
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        return total

    @classmethod
    def collect(cls, attrs: Sequence[str]) -> dict:
        usage = {}
        for p in cls.processes():
            try:
                values = p.as_dict(attrs)
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                # the tool may exit between listing and sampling
                continue
            for k, v in cls.unwrap(values).items():
                usage[k] = usage.get(k, 0) + v
        return usage

    @staticmethod
    def unwrap(values: dict) -> dict:
        res = {}
        for k, v in values.items():
            if isinstance(v, (int, float)):
                res[k] = v
            elif hasattr(v, '_asdict'):
                res.update({f"{k}.{sk}": sv for sk, sv in v._asdict().items() if isinstance(sv, (int, float))})
        return res
