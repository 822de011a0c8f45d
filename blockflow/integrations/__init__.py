# Copyright 2025 Ralph Lemke
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

"""Capability hooks for the built-in integration block types.

Each module exposes a ``register(registry)`` hook, so it can be loaded
with ``--capabilities blockflow.integrations.<module>`` or called
directly when embedding the engine.
"""

from .api import register as register_api
from .notion import register as register_notion


def register(registry) -> None:
    """Register every integration capability."""
    register_api(registry)
    register_notion(registry)


__all__ = ["register", "register_api", "register_notion"]
