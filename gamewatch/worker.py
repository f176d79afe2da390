# /gamewatch/gamewatch/worker.py

from collections import deque
from concurrent.futures import ThreadPoolExecutor
from threading import Lock


class BackgroundWorker:
    """
    Fire-and-forget task queue bound to the Flask app.

    Callers get a Future back but never have to wait on it. Every task runs
    inside an app context; failures are logged and kept in `errors` so they
    stay observable after the fact.
    """

    def __init__(self, app=None, max_workers=2, max_errors=100):
        self.max_workers = max_workers
        self.errors = deque(maxlen=max_errors)
        self._executor = None
        self._lock = Lock()
        self.app = None
        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        self.app = app
        self.max_workers = app.config.get('WORKER_THREADS', self.max_workers)
        app.extensions['gamewatch.worker'] = self

    def _get_executor(self):
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.max_workers, thread_name_prefix='gamewatch-worker'
                )
            return self._executor

    def submit(self, func, *args, **kwargs):
        if self.app is None:
            raise RuntimeError("BackgroundWorker is not bound to an app. Call init_app() first.")
        app = self.app
        name = getattr(func, '__name__', repr(func))

        def _run():
            with app.app_context():
                return func(*args, **kwargs)

        future = self._get_executor().submit(_run)
        future.add_done_callback(lambda f: self._on_done(name, f))
        return future

    def _on_done(self, name, future):
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            self.errors.append((name, error))
            self.app.logger.error(f"Background task '{name}' failed: {error}")

    def shutdown(self, wait=True):
        with self._lock:
            if self._executor is not None:
                self._executor.shutdown(wait=wait)
                self._executor = None
