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
"""Wasm module cache.

Modules are downloaded once and stored as local files named after their
sha256 checksum, so Envoy can load them with a local data source.
"""
import abc
import dataclasses
import datetime
import enum
import hashlib
import logging
import os
import pathlib
import threading
import time
from typing import Callable, Dict, Optional
import urllib.parse

from xds_wasm import wasm
from xds_wasm.wasm import fetcher as fetcher_lib
from xds_wasm.wasm import monitoring

logger = logging.getLogger(__name__)

# Wasm binary header: magic number followed by a 4-byte version.
WASM_MAGIC_NUMBER = b'\x00asm'
_WASM_HEADER_LENGTH = 8
_SUPPORTED_SCHEMES = frozenset(('http', 'https'))


class PullPolicy(enum.IntEnum):
    """Wasm module pull policy, named as in WasmPlugin.imagePullPolicy."""
    UNSPECIFIED_POLICY = 0
    IfNotPresent = 1  # pylint: disable=invalid-name
    Always = 2  # pylint: disable=invalid-name

    @classmethod
    def from_name(cls, name: str) -> 'PullPolicy':
        return cls.__members__.get(name, cls.UNSPECIFIED_POLICY)


def is_valid_wasm_binary(module: bytes) -> bool:
    return (len(module) >= _WASM_HEADER_LENGTH and
            module[:len(WASM_MAGIC_NUMBER)] == WASM_MAGIC_NUMBER)


class ModuleCache(metaclass=abc.ABCMeta):

    @abc.abstractmethod
    def get(self, url: str, checksum: str, resource_name: str,
            resource_version: str, timeout: datetime.timedelta,
            pull_secret: Optional[bytes], pull_policy: PullPolicy) -> str:
        """Returns the path of a local file holding the Wasm module.

        Args:
            url: Module download URL.
            checksum: Expected sha256 hex digest, empty when unknown.
            resource_name: Name of the Wasm plugin requesting the module.
            resource_version: Version of the Wasm plugin resource, empty
                when unknown.
            timeout: Deadline for fetching the module.
            pull_secret: Registry credentials, None when not using secrets.
            pull_policy: Whether a cached module may be reused.

        Raises:
            Exception: the module couldn't be resolved. Implementations
                should raise subclasses of xds_wasm.wasm.Error.
        """
        raise NotImplementedError

    def cleanup(self):
        """Stops background work started by the cache."""


@dataclasses.dataclass(frozen=True)
class _ModuleKey:
    # Download URL. Any checksum the URL carries is part of the name.
    name: str
    checksum: str


@dataclasses.dataclass
class _CacheEntry:
    module_path: str
    # Last time this module was referenced, in the cache clock units.
    last_touched: float


class LocalFileCache(ModuleCache):
    """Wasm module cache backed by files in a local directory.

    Modules not referenced for longer than module_expiry are deleted by a
    background thread, checking every purge_interval.
    """
    DEFAULT_PURGE_INTERVAL = datetime.timedelta(minutes=10)
    DEFAULT_MODULE_EXPIRY = datetime.timedelta(hours=24)

    def __init__(self,
                 directory: str,
                 *,
                 purge_interval: datetime.timedelta = DEFAULT_PURGE_INTERVAL,
                 module_expiry: datetime.timedelta = DEFAULT_MODULE_EXPIRY,
                 fetcher: Optional[fetcher_lib.HttpFetcher] = None,
                 metrics: Optional[monitoring.WasmMetrics] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.directory = pathlib.Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.purge_interval = purge_interval
        self.module_expiry = module_expiry
        self._fetcher = fetcher or fetcher_lib.HttpFetcher()
        self._metrics = metrics or monitoring.WasmMetrics()
        self._clock = clock

        # Guards everything below, shared with the purge thread.
        self._lock = threading.Lock()
        self._modules: Dict[_ModuleKey, _CacheEntry] = {}
        # Resource version of the last fetch, by Wasm plugin name.
        self._resource_versions: Dict[str, str] = {}

        self._stopped = threading.Event()
        self._purge_thread = threading.Thread(target=self._purge_loop,
                                              name='wasm-cache-purge',
                                              daemon=True)
        self._purge_thread.start()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.cleanup()
        return False

    def get(self,
            url: str,
            checksum: str,
            resource_name: str,
            resource_version: str,
            timeout: datetime.timedelta,
            pull_secret: Optional[bytes] = None,
            pull_policy: PullPolicy = PullPolicy.UNSPECIFIED_POLICY) -> str:
        key = _ModuleKey(name=url, checksum=checksum)
        if checksum and self._may_reuse(resource_name, resource_version,
                                        pull_policy):
            module_path = self._get_entry(key)
            if module_path:
                return module_path

        scheme = urllib.parse.urlparse(url).scheme
        if scheme not in _SUPPORTED_SCHEMES:
            raise wasm.UnsupportedSchemeError(
                f'Unsupported Wasm module downloading URL scheme: {scheme}')
        if pull_secret is not None:
            logger.debug('Ignoring pull secret for %s: only used with '
                         'registry pulls', url)

        try:
            module = self._fetcher.fetch(url, timeout.total_seconds())
        except wasm.ModuleFetchError:
            self._metrics.record_remote_fetch(monitoring.DOWNLOAD_FAILURE)
            raise

        downloaded_checksum = hashlib.sha256(module).hexdigest()
        if not checksum:
            key = dataclasses.replace(key, checksum=downloaded_checksum)
            module_path = self._get_entry(key)
            if module_path:
                self._set_resource_version(resource_name, resource_version)
                return module_path
        elif downloaded_checksum != checksum:
            self._metrics.record_remote_fetch(monitoring.CHECKSUM_MISMATCH)
            raise wasm.ChecksumMismatchError(
                f'Module downloaded from {url} has checksum '
                f'{downloaded_checksum}, which does not match: {checksum}')

        if not is_valid_wasm_binary(module):
            self._metrics.record_remote_fetch(monitoring.FETCH_FAILURE)
            raise wasm.InvalidModuleError(
                f'Fetched Wasm binary from {url} is invalid')
        self._metrics.record_remote_fetch(monitoring.FETCH_SUCCESS)

        module_path = self._add_entry(
            key, module, self.directory / f'{downloaded_checksum}.wasm')
        self._set_resource_version(resource_name, resource_version)
        return module_path

    def purge(self):
        """Deletes modules not referenced for longer than module_expiry."""
        expiry_sec = self.module_expiry.total_seconds()
        with self._lock:
            now = self._clock()
            for key, entry in list(self._modules.items()):
                if now - entry.last_touched <= expiry_sec:
                    continue
                # Modules with the same content share one file.
                shared = any(other.module_path == entry.module_path
                             for other_key, other in self._modules.items()
                             if other_key != key)
                if not shared:
                    try:
                        os.remove(entry.module_path)
                    except FileNotFoundError:
                        logger.debug('Stale Wasm module %s already removed',
                                     entry.module_path)
                    except OSError as e:
                        logger.error('Failed to purge Wasm module %s: %r',
                                     entry.module_path, e)
                        continue
                del self._modules[key]
                logger.debug('Removed stale Wasm module %s', entry.module_path)
            self._metrics.set_cache_entries(len(self._modules))

    def cleanup(self):
        self._stopped.set()
        self._purge_thread.join()

    def _purge_loop(self):
        interval_sec = self.purge_interval.total_seconds()
        while not self._stopped.wait(interval_sec):
            self.purge()

    def _may_reuse(self, resource_name: str, resource_version: str,
                   pull_policy: PullPolicy) -> bool:
        if pull_policy is not PullPolicy.Always:
            return True
        # Always pull once per resource version.
        with self._lock:
            return self._resource_versions.get(resource_name) == \
                resource_version

    def _set_resource_version(self, resource_name: str,
                              resource_version: str):
        with self._lock:
            self._resource_versions[resource_name] = resource_version

    def _get_entry(self, key: _ModuleKey) -> Optional[str]:
        with self._lock:
            entry = self._modules.get(key)
            if entry is not None:
                entry.last_touched = self._clock()
        self._metrics.record_cache_lookup(entry is not None)
        return entry.module_path if entry is not None else None

    def _add_entry(self, key: _ModuleKey, module: bytes,
                   module_path: pathlib.Path) -> str:
        with self._lock:
            entry = self._modules.get(key)
            if entry is not None:
                entry.last_touched = self._clock()
                return entry.module_path
            module_path.write_bytes(module)
            entry = _CacheEntry(module_path=str(module_path),
                                last_touched=self._clock())
            self._modules[key] = entry
            self._metrics.set_cache_entries(len(self._modules))
        logger.info('Stored Wasm module %s at %s', key.name, module_path)
        return entry.module_path
