from logging import Logger

import httpx

from imgcache.errors import UpstreamFetchError

USER_AGENT = 'imgcache'


class UrlFetcher:

  def __init__(self, log: Logger, client: httpx.Client, max_bytes: int):
    self.log = log
    self.client = client
    self.max_bytes = max_bytes

  def fetch(self, url: str) -> bytes:
    if not url.startswith(('http://', 'https://')):
      raise UpstreamFetchError(url, None, 'unsupported scheme')

    try:
      with self.client.stream('GET', url, follow_redirects=True) as res:
        if not res.is_success:
          raise UpstreamFetchError(url, res.status_code, f'upstream answered {res.status_code}')

        length = res.headers.get('content-length')
        if length is not None and length.isdigit() and int(length) > self.max_bytes:
          raise UpstreamFetchError(url, res.status_code, f'too large: {length} bytes')

        chunks: list[bytes] = []
        size = 0
        for chunk in res.iter_bytes():
          size += len(chunk)
          if size > self.max_bytes:
            raise UpstreamFetchError(
                url, res.status_code, f'too large: over {self.max_bytes} bytes')
          chunks.append(chunk)
    except (httpx.HTTPError, httpx.InvalidURL) as e:
      raise UpstreamFetchError(url, None, str(e) or type(e).__name__) from e

    self.log.debug({
        'message': 'fetched',
        'url': url,
        'size': size,
    })
    return b''.join(chunks)

  def close(self) -> None:
    self.client.close()
