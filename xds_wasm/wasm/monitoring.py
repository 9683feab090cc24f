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
from typing import Optional

import prometheus_client

# Remote fetch results
FETCH_SUCCESS = 'fetch_success'
DOWNLOAD_FAILURE = 'download_failure'
CHECKSUM_MISMATCH = 'checksum_mismatched'
FETCH_FAILURE = 'fetch_failure'

# Milliseconds
_CONVERSION_DURATION_BUCKETS = (1, 5, 10, 50, 100, 500, 1000, 5000, 10000,
                                50000)


class WasmMetrics:
    """Wasm conversion and module cache metrics.

    Every instance registers its own collectors, so each registry can hold
    at most one WasmMetrics. When no registry is given, a private one is
    created.
    """
    registry: prometheus_client.CollectorRegistry

    def __init__(
            self,
            registry: Optional[prometheus_client.CollectorRegistry] = None):
        if registry is None:
            registry = prometheus_client.CollectorRegistry()
        self.registry = registry

        self._conversion_count = prometheus_client.Counter(
            'wasm_config_conversion_count',
            'Number of Wasm config conversions and their results.',
            ['result'],
            registry=registry)
        self._conversion_duration = prometheus_client.Histogram(
            'wasm_config_conversion_duration',
            'Total time in milliseconds istio-agent spends on converting '
            'remote load in Wasm config.',
            buckets=_CONVERSION_DURATION_BUCKETS,
            registry=registry)
        self._cache_entries = prometheus_client.Gauge(
            'wasm_cache_entries',
            'Number of Wasm remote fetch cache entries.',
            registry=registry)
        self._cache_lookup_count = prometheus_client.Counter(
            'wasm_cache_lookup_count',
            'Number of Wasm remote fetch cache lookups.', ['hit'],
            registry=registry)
        self._remote_fetch_count = prometheus_client.Counter(
            'wasm_remote_fetch_count',
            'Number of Wasm remote fetches and results.', ['result'],
            registry=registry)

    def record_conversion(self, result: str):
        self._conversion_count.labels(result=result).inc()

    def record_conversion_duration(self, duration_ms: float):
        self._conversion_duration.observe(duration_ms)

    def record_cache_lookup(self, hit: bool):
        self._cache_lookup_count.labels(hit=str(hit).lower()).inc()

    def record_remote_fetch(self, result: str):
        self._remote_fetch_count.labels(result=result).inc()

    def set_cache_entries(self, count: int):
        self._cache_entries.set(count)
