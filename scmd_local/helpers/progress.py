from __future__ import annotations

from typing import Optional

from tqdm import tqdm


class DownloadProgressBar:
    """
    `(bytes_so_far, total_bytes)` callback that drives a tqdm bar.

    The bar is created lazily on the first report so a resumed download
    starts at its resume offset instead of zero.
    """

    def __init__(self, label: str, *, disable: bool = False) -> None:
        self.label = label
        self.disable = disable
        self._bar: Optional[tqdm] = None

    def __call__(self, current: int, total: int) -> None:
        if self._bar is None:
            self._bar = tqdm(
                total=total or None,
                initial=current,
                unit="B",
                unit_scale=True,
                unit_divisor=1024,
                desc=self.label,
                disable=self.disable,
            )
            return
        if current < self._bar.n:
            # server ignored the range request and the transfer restarted
            self._bar.reset(total=total or None)
        elif total and self._bar.total != total:
            self._bar.total = total
        self._bar.update(current - self._bar.n)

    def close(self) -> None:
        if self._bar is not None:
            self._bar.close()
            self._bar = None

    def __enter__(self) -> "DownloadProgressBar":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
