from __future__ import annotations

from arq import run_worker

from roomrender.workers.render_worker import WorkerSettings


if __name__ == "__main__":
    # Equivalent to `arq roomrender.workers.render_worker.WorkerSettings`.
    run_worker(WorkerSettings)
