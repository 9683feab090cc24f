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
"""Converts remote Wasm module loads in ECDS resources to local files.

Extension config (ECDS) resources may carry a Wasm HTTP filter whose VM code
is fetched from a remote URL. Envoy must not download modules itself, so
each such module is resolved through a ModuleCache and the resource is
rewritten to load the module from the returned local file.

When a module can't be resolved, the resource is replaced with a placeholder:
a fail-closed Wasm filter that rejects all traffic, or an allow-all RBAC
filter when the plugin is marked fail_open. A fail-closed failure requests
a NACK of the whole push. If the same resource had already been converted
successfully, the failed resource is dropped instead, so Envoy keeps the
working filter it already has.
"""
import concurrent.futures
import dataclasses
import datetime
import enum
import logging
import threading
import time
from typing import List, Optional, Sequence, Set, Tuple

import google.protobuf.message

from xds_wasm import xds
from xds_wasm.wasm import cache as wasm_cache
from xds_wasm.wasm import monitoring

logger = logging.getLogger(__name__)

# Type aliases
AnyProto = xds.AnyProto
DeltaResource = xds.DeltaResource
ModuleCache = wasm_cache.ModuleCache
PullPolicy = wasm_cache.PullPolicy
TypedExtensionConfig = xds.TypedExtensionConfig
VmConfig = xds.VmConfig
WasmFilter = xds.WasmFilter

# Set by the control plane for the agent, never forwarded to Envoy.
WASM_SECRET_ENV = 'ISTIO_META_WASM_IMAGE_PULL_SECRET'
WASM_POLICY_ENV = 'ISTIO_META_WASM_IMAGE_PULL_POLICY'
WASM_RESOURCE_VERSION_ENV = 'ISTIO_META_WASM_PLUGIN_RESOURCE_VERSION'
_RESERVED_ENV_KEYS = (WASM_SECRET_ENV, WASM_POLICY_ENV,
                      WASM_RESOURCE_VERSION_ENV)

NULL_VM_RUNTIME = 'envoy.wasm.runtime.null'
DEFAULT_FETCH_TIMEOUT = datetime.timedelta(seconds=5)
# Sent as the checksum when the user didn't set one.
NIL_CHECKSUM = 'nil'


class ConversionStatus(enum.Enum):
    NO_REMOTE_LOAD = 'no_remote_load'
    SUCCESS = 'conversion_success'
    FETCH_FAILURE = 'fetch_failure'
    MISSING_FETCH_HINT = 'miss_remote_fetch_hint'
    MARSHAL_FAILURE = 'marshal_failure'


class ConvertedResources:
    """Thread-safe set of extension config names converted successfully."""

    def __init__(self):
        self._lock = threading.Lock()
        self._names: Set[str] = set()

    def add(self, name: str):
        with self._lock:
            self._names.add(name)

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._names


class _ConversionError(Exception):

    def __init__(self, status: ConversionStatus, message: str):
        super().__init__(message)
        self.status = status


@dataclasses.dataclass(frozen=True)
class _Conversion:
    status: ConversionStatus
    name: str = ''
    fail_open: bool = False
    # Rewritten resource, set on success.
    resource: Optional[AnyProto] = None


def create_placeholder(name: str, *, deny_all: bool) -> AnyProto:
    """Extension config standing in for a Wasm filter that can't be loaded.

    The deny-all filter runs a null VM with no code, which fails fast in
    the data plane. The allow-all filter is an RBAC filter with no rules.
    """
    if deny_all:
        placeholder = WasmFilter()
        placeholder.config.vm_config.runtime = NULL_VM_RUNTIME
    else:
        placeholder = xds.RbacFilter()
    return xds.message_to_any(
        TypedExtensionConfig(name=name,
                             typed_config=xds.message_to_any(placeholder)))


def _decode_native_filter(typed_config: AnyProto) -> Optional[WasmFilter]:
    if typed_config.type_url != xds.WASM_HTTP_FILTER_TYPE:
        return None
    return xds.unpack_as(typed_config, WasmFilter)


def _decode_typed_struct_filter(
        typed_config: AnyProto) -> Optional[WasmFilter]:
    if typed_config.type_url != xds.TYPED_STRUCT_TYPE:
        return None
    typed_struct = xds.unpack_as(typed_config, xds.TypedStruct)
    if typed_struct.type_url != xds.WASM_HTTP_FILTER_TYPE:
        logger.debug('Typed struct %s is not a Wasm HTTP filter',
                     typed_struct.type_url)
        return None
    return xds.struct_to_message(typed_struct.value, WasmFilter())


# Tried in order, the first one to recognize the payload wins.
_WASM_FILTER_DECODERS = (_decode_native_filter, _decode_typed_struct_filter)


def decode_wasm_filter(
        extension_config: TypedExtensionConfig) -> Optional[WasmFilter]:
    """Returns the Wasm HTTP filter of the extension config, if it has one.

    Raises:
        xds.UnpackError: the payload claims to be a Wasm filter but can't be
            decoded.
    """
    if not extension_config.HasField('typed_config'):
        return None
    for decoder in _WASM_FILTER_DECODERS:
        wasm_filter = decoder(extension_config.typed_config)
        if wasm_filter is not None:
            return wasm_filter
    return None


def _pop_reserved_env(
        vm_config: VmConfig) -> Tuple[Optional[bytes], PullPolicy, str]:
    """Strips control plane env variables, returns the fetch options."""
    pull_secret: Optional[bytes] = None
    pull_policy = PullPolicy.UNSPECIFIED_POLICY
    resource_version = ''
    if not vm_config.HasField('environment_variables'):
        return pull_secret, pull_policy, resource_version

    env = vm_config.environment_variables
    key_values = env.key_values
    if WASM_SECRET_ENV in key_values:
        # Present but empty means the secret was requested and not resolved.
        if not key_values[WASM_SECRET_ENV]:
            raise _ConversionError(ConversionStatus.FETCH_FAILURE,
                                   'missing image pulling secret')
        pull_secret = key_values[WASM_SECRET_ENV].encode()
    if WASM_POLICY_ENV in key_values:
        pull_policy = PullPolicy.from_name(key_values[WASM_POLICY_ENV])
    if WASM_RESOURCE_VERSION_ENV in key_values:
        resource_version = key_values[WASM_RESOURCE_VERSION_ENV]

    for key in _RESERVED_ENV_KEYS:
        if key in key_values:
            del key_values[key]
    if not key_values:
        if env.host_env_keys:
            env.ClearField('key_values')
        else:
            vm_config.ClearField('environment_variables')
    return pull_secret, pull_policy, resource_version


class ExtensionConfigConverter:
    """Rewrites remote Wasm module loads of ECDS resources to local files.

    Args:
        cache: Resolves remote modules to local files.
        converted_resources: Names of resources converted successfully by
            earlier batches. Converters sharing it share the no-resend
            behavior. A new set is created when omitted.
        metrics: Where to record conversion metrics. A new WasmMetrics with
            a private registry is created when omitted.
        max_workers: Upper bound on concurrent conversions in a batch. By
            default every resource of a batch is converted concurrently.
    """

    def __init__(self,
                 cache: ModuleCache,
                 *,
                 converted_resources: Optional[ConvertedResources] = None,
                 metrics: Optional[monitoring.WasmMetrics] = None,
                 max_workers: Optional[int] = None):
        self._cache = cache
        if converted_resources is None:
            converted_resources = ConvertedResources()
        self.converted_resources = converted_resources
        self._metrics = metrics or monitoring.WasmMetrics()
        self._max_workers = max_workers

    def convert_batch(
        self, resources: Sequence[Optional[AnyProto]]
    ) -> Tuple[List[AnyProto], bool]:
        """Converts a state-of-the-world batch of extension configs.

        Returns:
            The resources to send, in the input order, and whether the push
            must be NACKed. None entries and dropped resources are omitted.
        """
        results = self._convert_all(resources)
        converted = [
            resource for resource, _ in results if resource is not None
        ]
        return converted, any(nack for _, nack in results)

    def convert_delta_batch(
        self, resources: Sequence[DeltaResource]
    ) -> Tuple[List[DeltaResource], bool]:
        """Converts the payloads of delta xDS resources.

        Envelope fields are kept as is. Resources without a payload are
        passed through, dropped resources are omitted.
        """
        payloads = [
            resource.resource if resource.HasField('resource') else None
            for resource in resources
        ]
        results = self._convert_all(payloads)

        converted: List[DeltaResource] = []
        for delta, payload, (resource, _) in zip(resources, payloads, results):
            if payload is None or resource is payload:
                converted.append(delta)
            elif resource is not None:
                rewritten = DeltaResource()
                rewritten.CopyFrom(delta)
                rewritten.resource.CopyFrom(resource)
                converted.append(rewritten)
        return converted, any(nack for _, nack in results)

    def _convert_all(
        self, resources: Sequence[Optional[AnyProto]]
    ) -> List[Tuple[Optional[AnyProto], bool]]:
        start = time.monotonic()
        try:
            if not resources:
                return []
            max_workers = len(resources)
            if self._max_workers:
                max_workers = min(max_workers, self._max_workers)
            with concurrent.futures.ThreadPoolExecutor(
                    max_workers=max_workers,
                    thread_name_prefix='wasm-convert') as executor:
                return list(executor.map(self._process, resources))
        finally:
            self._metrics.record_conversion_duration(
                (time.monotonic() - start) * 1000)

    def _process(
            self,
            resource: Optional[AnyProto]) -> Tuple[Optional[AnyProto], bool]:
        """Returns the resource to send, None to omit it, and the NACK bit."""
        if resource is None:
            return None, False

        conversion = self._convert_one(resource)
        self._metrics.record_conversion(conversion.status.value)
        if conversion.status is ConversionStatus.NO_REMOTE_LOAD:
            return resource, False
        if conversion.status is ConversionStatus.SUCCESS:
            self.converted_resources.add(conversion.name)
            return conversion.resource, False

        if conversion.fail_open:
            return create_placeholder(conversion.name, deny_all=False), False
        if conversion.name in self.converted_resources:
            logger.warning(
                'Not sending extension config %s: its Wasm module was '
                'loaded before, keeping the previous config', conversion.name)
            return None, True
        return create_placeholder(conversion.name, deny_all=True), True

    def _convert_one(self, resource: AnyProto) -> _Conversion:
        try:
            extension_config = xds.unpack_as(resource, TypedExtensionConfig)
        except xds.UnpackError as e:
            logger.debug('Failed to unmarshal extension config resource: %s',
                         e)
            return _Conversion(ConversionStatus.NO_REMOTE_LOAD)

        name = extension_config.name
        try:
            wasm_filter = decode_wasm_filter(extension_config)
        except xds.UnpackError as e:
            logger.debug('Failed to decode Wasm HTTP filter of %s: %s', name,
                         e)
            return _Conversion(ConversionStatus.NO_REMOTE_LOAD, name=name)
        if wasm_filter is None:
            logger.debug('Extension config %s has no Wasm HTTP filter', name)
            return _Conversion(ConversionStatus.NO_REMOTE_LOAD, name=name)
        if wasm_filter.config.vm_config.code.WhichOneof(
                'specifier') != 'remote':
            logger.debug('No remote load found in Wasm HTTP filter %s', name)
            return _Conversion(ConversionStatus.NO_REMOTE_LOAD, name=name)

        # Remote load from here on: any failure is reported, unless the
        # plugin fails open.
        fail_open = wasm_filter.config.fail_open
        try:
            converted = self._fetch_and_rewrite(extension_config, wasm_filter)
        except _ConversionError as e:
            logger.error('Cannot convert Wasm extension config %s: %s', name,
                         e)
            return _Conversion(e.status, name=name, fail_open=fail_open)
        return _Conversion(ConversionStatus.SUCCESS,
                           name=name,
                           resource=converted)

    def _fetch_and_rewrite(self, extension_config: TypedExtensionConfig,
                           wasm_filter: WasmFilter) -> AnyProto:
        plugin_name = wasm_filter.config.name
        vm_config = wasm_filter.config.vm_config
        pull_secret, pull_policy, resource_version = _pop_reserved_env(
            vm_config)

        remote = vm_config.code.remote
        if not remote.HasField('http_uri'):
            raise _ConversionError(
                ConversionStatus.MISSING_FETCH_HINT,
                'Wasm remote fetch does not have http_uri specified')
        url = remote.http_uri.uri
        checksum = '' if remote.sha256 == NIL_CHECKSUM else remote.sha256
        timeout = DEFAULT_FETCH_TIMEOUT
        if remote.http_uri.HasField('timeout'):
            timeout = remote.http_uri.timeout.ToTimedelta() or timeout

        try:
            module_path = self._cache.get(url, checksum, plugin_name,
                                          resource_version, timeout,
                                          pull_secret, pull_policy)
        except Exception as e:  # pylint: disable=broad-except
            raise _ConversionError(
                ConversionStatus.FETCH_FAILURE,
                f'cannot fetch Wasm module {url}: {e!r}') from e

        # Setting the local source clears the remote one.
        vm_config.code.local.filename = module_path
        try:
            extension_config.typed_config.Pack(wasm_filter)
            converted = xds.message_to_any(extension_config)
        except google.protobuf.message.EncodeError as e:
            raise _ConversionError(
                ConversionStatus.MARSHAL_FAILURE,
                f'failed to marshal rewritten extension config: {e}') from e
        logger.debug('Rewrote extension config %s to local file %s',
                     extension_config.name, module_path)
        return converted
