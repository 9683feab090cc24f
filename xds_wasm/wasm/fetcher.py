# Copyright 2021 gRPC authors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
import logging
import time
from typing import Optional

import requests
import tenacity

from xds_wasm import wasm

logger = logging.getLogger(__name__)


def _is_retriable(error: BaseException) -> bool:
    if isinstance(error, requests.HTTPError):
        # Client errors won't go away on retry.
        return error.response is not None and error.response.status_code >= 500
    return isinstance(error, (requests.ConnectionError, requests.Timeout))


class HttpFetcher:
    """Downloads Wasm modules over HTTP(S) with exponential backoff."""
    DEFAULT_MAX_ATTEMPTS = 5
    DEFAULT_INITIAL_BACKOFF_SEC = 0.5
    DEFAULT_MAX_BACKOFF_SEC = 10

    def __init__(self,
                 *,
                 max_attempts: int = DEFAULT_MAX_ATTEMPTS,
                 initial_backoff_sec: float = DEFAULT_INITIAL_BACKOFF_SEC,
                 max_backoff_sec: float = DEFAULT_MAX_BACKOFF_SEC,
                 session: Optional[requests.Session] = None):
        self.max_attempts = max_attempts
        self.initial_backoff_sec = initial_backoff_sec
        self.max_backoff_sec = max_backoff_sec
        self._session = session or requests.Session()

    def fetch(self, url: str, timeout_sec: float) -> bytes:
        """Returns the body of the URL.

        All attempts, including the backoff between them, finish within
        timeout_sec. Each attempt gets the time left until then.

        Raises:
            ModuleFetchError: the module couldn't be downloaded before the
                deadline or after all attempts, or the server rejected the
                request.
        """
        deadline = time.monotonic() + timeout_sec
        retryer = tenacity.Retrying(
            retry=tenacity.retry_if_exception(_is_retriable),
            wait=tenacity.wait_exponential(multiplier=self.initial_backoff_sec,
                                           max=self.max_backoff_sec),
            # Don't start a backoff that would end past the deadline.
            stop=(tenacity.stop_after_attempt(self.max_attempts) |
                  tenacity.stop_before_delay(timeout_sec)),
            after=tenacity.after_log(logger, logging.DEBUG),
            reraise=True)
        try:
            return retryer(self._download, url, deadline)
        except requests.RequestException as e:
            raise wasm.ModuleFetchError(
                f'Wasm module download from {url} failed: {e}') from e

    def _download(self, url: str, deadline: float) -> bytes:
        timeout_sec = deadline - time.monotonic()
        if timeout_sec <= 0:
            raise requests.Timeout(f'Deadline exceeded before fetching {url}')
        logger.debug('Downloading Wasm module %s, timeout %.3f sec', url,
                     timeout_sec)
        response = self._session.get(url, timeout=timeout_sec)
        response.raise_for_status()
        return response.content

    def close(self):
        self._session.close()
