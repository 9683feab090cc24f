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
from absl import flags

# Module cache
CACHE_DIR = flags.DEFINE_string(
    "wasm_cache_dir",
    default="/var/lib/istio/data",
    help="Directory to store downloaded Wasm modules in")
PURGE_INTERVAL_SEC = flags.DEFINE_integer(
    "wasm_purge_interval_sec",
    default=10 * 60,
    lower_bound=1,
    help="How often to look for stale Wasm modules to delete")
MODULE_EXPIRY_SEC = flags.DEFINE_integer(
    "wasm_module_expiry_sec",
    default=24 * 60 * 60,
    lower_bound=1,
    help="Delete Wasm modules not referenced for this long")

# Module fetcher
FETCH_MAX_ATTEMPTS = flags.DEFINE_integer(
    "wasm_fetch_max_attempts",
    default=5,
    lower_bound=1,
    help="Attempts to download a Wasm module before giving up.\n"
    "Only connection errors, timeouts, and 5xx responses are retried.")

# Conversion
CONVERT_MAX_WORKERS = flags.DEFINE_integer(
    "wasm_convert_max_workers",
    default=None,
    lower_bound=1,
    help="Upper bound on extension configs converted concurrently.\n"
    "When omitted, all resources of a batch are converted concurrently.")
