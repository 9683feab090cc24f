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
"""Envoy xDS message types and google.protobuf.Any helpers."""
import logging
from typing import Type, TypeVar

from envoy.config.core.v3 import extension_pb2
from envoy.extensions.filters.http.rbac.v3 import rbac_pb2
from envoy.extensions.filters.http.wasm.v3 import wasm_pb2 as wasm_filter_pb2
from envoy.extensions.wasm.v3 import wasm_pb2
from envoy.service.discovery.v3 import discovery_pb2
from google.protobuf import any_pb2
from google.protobuf import json_format
from google.protobuf import struct_pb2
import google.protobuf.message
from udpa.type.v1 import typed_struct_pb2
import yaml

logger = logging.getLogger(__name__)

# Type aliases
AnyProto = any_pb2.Any
Message = google.protobuf.message.Message
Struct = struct_pb2.Struct
DeltaResource = discovery_pb2.Resource
TypedExtensionConfig = extension_pb2.TypedExtensionConfig
TypedStruct = typed_struct_pb2.TypedStruct
WasmFilter = wasm_filter_pb2.Wasm
VmConfig = wasm_pb2.VmConfig
RbacFilter = rbac_pb2.RBAC

_MessageT = TypeVar('_MessageT', bound=Message)

TYPE_URL_PREFIX = 'type.googleapis.com/'


def type_url(message_class: Type[Message]) -> str:
    return TYPE_URL_PREFIX + message_class.DESCRIPTOR.full_name


WASM_HTTP_FILTER_TYPE = type_url(WasmFilter)
TYPED_STRUCT_TYPE = type_url(TypedStruct)
RBAC_HTTP_FILTER_TYPE = type_url(RbacFilter)
EXTENSION_CONFIG_TYPE = type_url(TypedExtensionConfig)


class Error(Exception):
    """Base error class for xDS message errors"""


class UnpackError(Error):
    """Message can't be decoded into the requested type."""


def message_to_any(message: Message) -> AnyProto:
    result = AnyProto()
    result.Pack(message)
    return result


def unpack_as(resource: AnyProto, message_class: Type[_MessageT]) -> _MessageT:
    """Unpacks the Any into a new instance of message_class.

    Raises:
        UnpackError: type URL doesn't match, or the payload is malformed.
    """
    message = message_class()
    try:
        matched = resource.Unpack(message)
    except google.protobuf.message.DecodeError as e:
        raise UnpackError(
            f'Malformed {resource.type_url} payload: {e}') from e
    if not matched:
        raise UnpackError(f'Expected {type_url(message_class)}, '
                          f'got {resource.type_url or "<empty>"}')
    return message


def struct_to_message(struct: Struct, message: _MessageT) -> _MessageT:
    """Merges a JSON-mapped Struct into the message and returns it."""
    try:
        return json_format.ParseDict(json_format.MessageToDict(struct),
                                     message)
    except json_format.ParseError as e:
        raise UnpackError(f'Cannot convert struct to '
                          f'{message.DESCRIPTOR.full_name}: {e}') from e


def message_to_struct(message: Message) -> Struct:
    struct = Struct()
    struct.update(json_format.MessageToDict(message))
    return struct


def message_pretty_format(message: Message) -> str:
    """Return a string with pretty-printed message."""
    return yaml.dump(json_format.MessageToDict(message),
                     explicit_start=True,
                     explicit_end=True)
