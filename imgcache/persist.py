import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from logging import Logger
from typing import Optional

from imgcache.storage import ObjectStore


class PersistQueue:
  """Writes derived renditions in the background.

  A write never blocks or fails the request that produced it: failures are
  logged with the key and dropped. ``flush`` and ``wait_for_prefix`` let the
  delete path and tests wait until queued writes have landed.
  """

  def __init__(self, log: Logger, store: ObjectStore, workers: int):
    self.log = log
    self.store = store
    self.executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix='imgcache-persist')
    self.lock = threading.Lock()
    self.pending: dict[Future[None], str] = {}

  def submit(self, key: str, data: bytes, content_type: str) -> Future[None]:
    future = self.executor.submit(self.store.put, key, data, content_type)
    with self.lock:
      if not future.done():
        self.pending[future] = key
    future.add_done_callback(lambda f: self.on_done(key, f))
    return future

  def on_done(self, key: str, future: Future[None]) -> None:
    with self.lock:
      self.pending.pop(future, None)

    e = future.exception()
    if e is not None:
      self.log.error({
          'message': 'failed to persist rendition',
          'key': key,
          'error': str(e),
      })
      return

    self.log.debug({
        'message': 'persisted rendition',
        'key': key,
    })

  def pending_futures(self, prefix: str = '') -> list[Future[None]]:
    with self.lock:
      return [f for f, key in self.pending.items() if key.startswith(prefix)]

  def wait_for_prefix(self, prefix: str, timeout: Optional[float] = None) -> None:
    futures = self.pending_futures(prefix)
    if len(futures) == 0:
      return
    _, not_done = wait(futures, timeout=timeout)
    if len(not_done) > 0:
      self.log.warning({
          'message': 'persist still pending after timeout',
          'prefix': prefix,
          'count': len(not_done),
      })

  def flush(self, timeout: Optional[float] = None) -> None:
    self.wait_for_prefix('', timeout)

  def close(self) -> None:
    self.executor.shutdown(wait=True)
