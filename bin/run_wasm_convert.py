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
"""Converts a file of Wasm extension configs the way the agent does.

Reads a YAML or JSON list of TypedExtensionConfig resources in the proto
JSON mapping, downloads the remote Wasm modules they reference into the
module cache, and prints the resources that would be sent to Envoy.
Exits with status 1 when the push would be NACKed.
"""
import datetime
import logging
import sys
from typing import List, Optional

from absl import app
from absl import flags
from google.protobuf import json_format
import prometheus_client
import yaml

from xds_wasm import wasm_flags
from xds_wasm import xds
from xds_wasm.wasm import cache as wasm_cache
from xds_wasm.wasm import convert
from xds_wasm.wasm import fetcher
from xds_wasm.wasm import monitoring

logger = logging.getLogger(__name__)
# Flags
_RESOURCES_FILE = flags.DEFINE_string(
    'resources_file',
    default=None,
    help='YAML or JSON file with a list of TypedExtensionConfig resources')
_DELTA = flags.DEFINE_bool(
    'delta',
    default=False,
    help='Convert the resources as delta xDS resources')
_METRICS_PORT = flags.DEFINE_integer(
    'metrics_port',
    default=None,
    lower_bound=1,
    upper_bound=65535,
    help='Serve Prometheus metrics on this port (optional)')
flags.adopt_module_key_flags(wasm_flags)

# Type aliases
_AnyProto = xds.AnyProto
_DeltaResource = xds.DeltaResource
_TypedExtensionConfig = xds.TypedExtensionConfig


def load_resources(path: str) -> List[_AnyProto]:
    with open(path) as f:
        documents = yaml.safe_load(f)
    if not isinstance(documents, list):
        raise app.UsageError(f'Expected a list of resources in {path}')
    try:
        return [
            xds.message_to_any(
                json_format.ParseDict(document, _TypedExtensionConfig()))
            for document in documents
        ]
    except json_format.ParseError as e:
        raise app.UsageError(f'Invalid extension config in {path}: {e}')


def convert_resources(converter: convert.ExtensionConfigConverter,
                      resources: List[_AnyProto], delta: bool):
    if not delta:
        return converter.convert_batch(resources)

    delta_resources = []
    for resource in resources:
        name = xds.unpack_as(resource, _TypedExtensionConfig).name
        delta_resources.append(_DeltaResource(name=name, resource=resource))
    converted, nack = converter.convert_delta_batch(delta_resources)
    return [delta.resource for delta in converted], nack


def convert_with_local_cache(resources: List[_AnyProto],
                             *,
                             delta: bool,
                             module_fetcher: fetcher.HttpFetcher,
                             metrics: monitoring.WasmMetrics,
                             cache_dir: str,
                             purge_interval: datetime.timedelta,
                             module_expiry: datetime.timedelta,
                             max_workers: Optional[int] = None):
    """Converts the resources, closes module_fetcher when done."""
    try:
        module_cache = wasm_cache.LocalFileCache(cache_dir,
                                                 purge_interval=purge_interval,
                                                 module_expiry=module_expiry,
                                                 fetcher=module_fetcher,
                                                 metrics=metrics)
        with module_cache:
            converter = convert.ExtensionConfigConverter(
                module_cache, metrics=metrics, max_workers=max_workers)
            return convert_resources(converter, resources, delta)
    finally:
        module_fetcher.close()


def main(argv):
    if len(argv) > 1:
        raise app.UsageError('Too many command-line arguments.')
    if not _RESOURCES_FILE.value:
        raise app.UsageError('--resources_file is required.')

    metrics = monitoring.WasmMetrics(prometheus_client.REGISTRY)
    if _METRICS_PORT.value:
        prometheus_client.start_http_server(_METRICS_PORT.value)
        logger.info('Serving metrics on port %s', _METRICS_PORT.value)

    resources = load_resources(_RESOURCES_FILE.value)
    logger.info('Loaded %d extension configs from %s', len(resources),
                _RESOURCES_FILE.value)

    converted, nack = convert_with_local_cache(
        resources,
        delta=_DELTA.value,
        module_fetcher=fetcher.HttpFetcher(
            max_attempts=wasm_flags.FETCH_MAX_ATTEMPTS.value),
        metrics=metrics,
        cache_dir=wasm_flags.CACHE_DIR.value,
        purge_interval=datetime.timedelta(
            seconds=wasm_flags.PURGE_INTERVAL_SEC.value),
        module_expiry=datetime.timedelta(
            seconds=wasm_flags.MODULE_EXPIRY_SEC.value),
        max_workers=wasm_flags.CONVERT_MAX_WORKERS.value)

    for resource in converted:
        print(
            xds.message_pretty_format(
                xds.unpack_as(resource, _TypedExtensionConfig)))
    logger.info('Converted %d of %d extension configs, NACK: %s',
                len(converted), len(resources), nack)
    if nack:
        sys.exit(1)


if __name__ == '__main__':
    app.run(main)
