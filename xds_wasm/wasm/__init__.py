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
"""Wasm module fetching, caching, and extension config conversion."""


class Error(Exception):
    """Base error class for Wasm module errors"""


class ModuleFetchError(Error):
    """Wasm module couldn't be downloaded."""


class ChecksumMismatchError(Error):
    """Downloaded Wasm module doesn't match the expected sha256 checksum."""


class InvalidModuleError(Error):
    """Downloaded binary is not a Wasm module."""


class UnsupportedSchemeError(Error):
    """Wasm module URL scheme can't be fetched."""
