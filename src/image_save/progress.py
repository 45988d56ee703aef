from __future__ import annotations

import sys
from typing import TextIO

import progressbar  # pyright: ignore [reportMissingTypeStubs]

from image_save.constants import PROGRESS_INTERVAL


class LayerTracker:
    """Bytes counter of a single layer transfer, owned by its download task"""

    def __init__(self, bar: progressbar.ProgressBar, total: int):
        self.bar = bar
        self.total = total
        self.value = 0
        self.done = False

    def increment(self, amount: int):
        self.value += amount
        if self.done:
            return
        self.bar.update(self.value)  # pyright: ignore [reportUnknownMemberType]
        if self.total > 0 and self.value >= self.total:
            self.mark_done()

    def mark_done(self):
        if self.done:
            return
        self.done = True
        self.bar.finish()


class LayerProgress:
    """Multiplexed progress display of concurrent layer downloads

    Rendering happens on the MultiBar's own thread, every `update_interval`
    seconds, reading the counters updated by download tasks."""

    def __init__(
        self, fd: TextIO | None = None, update_interval: float = PROGRESS_INTERVAL
    ):
        self.multibar = progressbar.MultiBar(
            fd=fd or sys.stderr, update_interval=update_interval
        )
        self.trackers: list[LayerTracker] = []

    def add_tracker(self, label: str, total: int) -> LayerTracker:
        if total > 0:
            bar = progressbar.ProgressBar(
                max_value=total,
                max_error=False,
                widgets=[
                    progressbar.DataSize(),
                    progressbar.Bar(),
                    progressbar.Percentage(),
                    " ",
                    progressbar.AdaptiveTransferSpeed(),
                    " (",
                    progressbar.ETA(),
                    ")",
                ],
            )
        else:
            bar = progressbar.ProgressBar(max_value=progressbar.UnknownLength)
        self.multibar[label] = bar
        tracker = LayerTracker(bar, total)
        self.trackers.append(tracker)
        return tracker

    def start(self):
        self.multibar.start()

    def abort(self):
        """mark every tracker done so rendering can terminate"""
        for tracker in self.trackers:
            tracker.mark_done()

    def wait(self):
        """block until the renderer has drawn every tracker as finished"""
        self.multibar.join()
