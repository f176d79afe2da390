from flask import current_app

import pytest

from gamewatch import worker
from gamewatch.worker import BackgroundWorker


def test_tasks_run_inside_app_context(app):
    future = worker.submit(lambda: current_app.name)
    assert future.result(timeout=5) == app.name


def test_failures_are_recorded(app):
    def explode():
        raise RuntimeError("kaboom")

    future = worker.submit(explode)
    with pytest.raises(RuntimeError):
        future.result(timeout=5)
    worker.shutdown()

    name, error = worker.errors[-1]
    assert name == 'explode'
    assert str(error) == 'kaboom'


def test_unbound_worker_refuses_work():
    with pytest.raises(RuntimeError):
        BackgroundWorker().submit(print)


def test_worker_threads_from_config(app):
    assert worker.max_workers == app.config['WORKER_THREADS']
