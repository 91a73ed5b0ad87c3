#!/usr/bin/env python3
"""
Follow a bulk evaluation run from the command line until it stops.

Usage: watch_progress.py <competition_id> [base_url]
"""

import sys

from app.services.progress_poller import ProgressPoller


def print_progress(progress):
    print(
        f"{progress.status.value:<10} {progress.evaluated_submissions}/{progress.total_submissions}"
        + (f"  ({progress.pause_reason})" if progress.pause_reason else "")
    )


def watch(competition_id: str, base_url: str = "http://localhost:8000") -> bool:
    poller = ProgressPoller(base_url, competition_id, on_update=print_progress)
    final = poller.run()
    if final is None:
        print(f"No progress recorded for competition {competition_id}")
        return False
    return final.status.value == "completed"


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print(__doc__.strip())
        sys.exit(2)
    success = watch(sys.argv[1], *sys.argv[2:3])
    sys.exit(0 if success else 1)
