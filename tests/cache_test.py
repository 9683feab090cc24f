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
import datetime
import hashlib
import os
import pathlib
import tempfile
from typing import Dict, List

from absl.testing import absltest

from xds_wasm import wasm
from xds_wasm.wasm import cache as wasm_cache
from xds_wasm.wasm import monitoring

_PullPolicy = wasm_cache.PullPolicy

_MODULE = b'\x00asm\x01\x00\x00\x00'
_MODULE_SHA = hashlib.sha256(_MODULE).hexdigest()
_URL = 'https://example.com/plugin.wasm'
_TIMEOUT = datetime.timedelta(seconds=5)
_EXPIRY = datetime.timedelta(hours=1)


class FakeFetcher:

    def __init__(self, modules: Dict[str, bytes]):
        self.modules = modules
        self.fetched: List[str] = []

    def fetch(self, url: str, timeout_sec: float) -> bytes:
        self.fetched.append(url)
        if url not in self.modules:
            raise wasm.ModuleFetchError(f'{url}: 404 Not Found')
        return self.modules[url]


class FakeClock:

    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def advance(self, delta: datetime.timedelta):
        self.now += delta.total_seconds()


class LocalFileCacheTest(absltest.TestCase):

    def setUp(self):
        super().setUp()
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.directory = tmp.name
        self.fetcher = FakeFetcher({_URL: _MODULE})
        self.metrics = monitoring.WasmMetrics()
        self.clock = FakeClock()
        self.cache = wasm_cache.LocalFileCache(self.directory,
                                               module_expiry=_EXPIRY,
                                               fetcher=self.fetcher,
                                               metrics=self.metrics,
                                               clock=self.clock)
        self.addCleanup(self.cache.cleanup)

    def get(self,
            url: str = _URL,
            checksum: str = '',
            resource_version: str = '',
            pull_policy: _PullPolicy = _PullPolicy.UNSPECIFIED_POLICY) -> str:
        return self.cache.get(url, checksum, 'plugin', resource_version,
                              _TIMEOUT, None, pull_policy)

    def sample(self, name: str, labels=None) -> float:
        return self.metrics.registry.get_sample_value(name, labels or {}) or 0

    def test_download_stored_by_checksum(self):
        module_path = self.get()

        self.assertEqual(module_path,
                         os.path.join(self.directory, f'{_MODULE_SHA}.wasm'))
        self.assertEqual(pathlib.Path(module_path).read_bytes(), _MODULE)
        self.assertEqual(
            self.sample('wasm_remote_fetch_count_total',
                        {'result': monitoring.FETCH_SUCCESS}), 1)
        self.assertEqual(self.sample('wasm_cache_entries'), 1)

    def test_checksum_hit_skips_download(self):
        first = self.get(checksum=_MODULE_SHA)
        second = self.get(checksum=_MODULE_SHA)

        self.assertEqual(first, second)
        self.assertEqual(self.fetcher.fetched, [_URL])
        self.assertEqual(
            self.sample('wasm_cache_lookup_count_total', {'hit': 'true'}), 1)
        self.assertEqual(
            self.sample('wasm_cache_lookup_count_total', {'hit': 'false'}), 1)

    def test_no_checksum_downloads_and_reuses_file(self):
        first = self.get()
        second = self.get()

        self.assertEqual(first, second)
        self.assertLen(self.fetcher.fetched, 2)
        self.assertEqual(self.sample('wasm_cache_entries'), 1)

    def test_checksum_mismatch(self):
        with self.assertRaises(wasm.ChecksumMismatchError):
            self.get(checksum='0' * 64)

        self.assertEqual(
            self.sample('wasm_remote_fetch_count_total',
                        {'result': monitoring.CHECKSUM_MISMATCH}), 1)
        self.assertEmpty(os.listdir(self.directory))

    def test_invalid_binary(self):
        self.fetcher.modules[_URL] = b'<html>not found</html>'

        with self.assertRaises(wasm.InvalidModuleError):
            self.get()

        self.assertEqual(
            self.sample('wasm_remote_fetch_count_total',
                        {'result': monitoring.FETCH_FAILURE}), 1)

    def test_truncated_header_is_invalid(self):
        self.fetcher.modules[_URL] = b'\x00asm'

        with self.assertRaises(wasm.InvalidModuleError):
            self.get()

    def test_unsupported_scheme(self):
        with self.assertRaises(wasm.UnsupportedSchemeError):
            self.get('oci://registry.example.com/plugin:v1')

        self.assertEmpty(self.fetcher.fetched)

    def test_download_failure(self):
        with self.assertRaises(wasm.ModuleFetchError):
            self.get('https://example.com/missing.wasm')

        self.assertEqual(
            self.sample('wasm_remote_fetch_count_total',
                        {'result': monitoring.DOWNLOAD_FAILURE}), 1)

    def test_always_policy_refetches_new_resource_version(self):
        self.get(checksum=_MODULE_SHA,
                 resource_version='1',
                 pull_policy=_PullPolicy.Always)
        self.get(checksum=_MODULE_SHA,
                 resource_version='2',
                 pull_policy=_PullPolicy.Always)

        self.assertLen(self.fetcher.fetched, 2)

    def test_always_policy_reuses_same_resource_version(self):
        self.get(checksum=_MODULE_SHA,
                 resource_version='1',
                 pull_policy=_PullPolicy.Always)
        self.get(checksum=_MODULE_SHA,
                 resource_version='1',
                 pull_policy=_PullPolicy.Always)

        self.assertLen(self.fetcher.fetched, 1)

    def test_if_not_present_ignores_resource_version(self):
        self.get(checksum=_MODULE_SHA,
                 resource_version='1',
                 pull_policy=_PullPolicy.IfNotPresent)
        self.get(checksum=_MODULE_SHA,
                 resource_version='2',
                 pull_policy=_PullPolicy.IfNotPresent)

        self.assertLen(self.fetcher.fetched, 1)

    def test_purge_removes_expired_module(self):
        module_path = self.get(checksum=_MODULE_SHA)
        self.clock.advance(_EXPIRY + datetime.timedelta(seconds=1))

        self.cache.purge()

        self.assertFalse(os.path.exists(module_path))
        self.assertEqual(self.sample('wasm_cache_entries'), 0)
        self.get(checksum=_MODULE_SHA)
        self.assertLen(self.fetcher.fetched, 2)

    def test_purge_keeps_fresh_module(self):
        module_path = self.get(checksum=_MODULE_SHA)
        self.clock.advance(_EXPIRY - datetime.timedelta(seconds=1))

        self.cache.purge()

        self.assertTrue(os.path.exists(module_path))
        self.assertEqual(self.sample('wasm_cache_entries'), 1)

    def test_purge_keeps_file_shared_with_fresh_module(self):
        mirror_url = 'https://mirror.example.com/plugin.wasm'
        self.fetcher.modules[mirror_url] = _MODULE
        module_path = self.get(checksum=_MODULE_SHA)
        self.clock.advance(_EXPIRY)
        self.assertEqual(self.get(mirror_url, checksum=_MODULE_SHA),
                         module_path)
        self.clock.advance(datetime.timedelta(seconds=1))

        self.cache.purge()

        self.assertTrue(os.path.exists(module_path))
        self.assertEqual(self.sample('wasm_cache_entries'), 1)

    def test_purge_tolerates_missing_file(self):
        module_path = self.get(checksum=_MODULE_SHA)
        os.remove(module_path)
        self.clock.advance(_EXPIRY + datetime.timedelta(seconds=1))

        self.cache.purge()

        self.assertEqual(self.sample('wasm_cache_entries'), 0)


class IsValidWasmBinaryTest(absltest.TestCase):

    def test_valid(self):
        self.assertTrue(wasm_cache.is_valid_wasm_binary(_MODULE))

    def test_invalid(self):
        self.assertFalse(wasm_cache.is_valid_wasm_binary(b''))
        self.assertFalse(wasm_cache.is_valid_wasm_binary(b'\x00asm'))
        self.assertFalse(
            wasm_cache.is_valid_wasm_binary(b'\x7fELF\x02\x01\x01\x00'))


class PullPolicyTest(absltest.TestCase):

    def test_from_name(self):
        self.assertIs(_PullPolicy.from_name('Always'), _PullPolicy.Always)
        self.assertIs(_PullPolicy.from_name('IfNotPresent'),
                      _PullPolicy.IfNotPresent)
        self.assertIs(_PullPolicy.from_name('always'),
                      _PullPolicy.UNSPECIFIED_POLICY)
        self.assertIs(_PullPolicy.from_name(''),
                      _PullPolicy.UNSPECIFIED_POLICY)


if __name__ == '__main__':
    absltest.main()
