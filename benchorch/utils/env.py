# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
# http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Typed environment variable lookups."""

import os
from typing import TypeVar, Callable, List, Optional

T = TypeVar('T')

ENV_PREFIX = "BENCHORCH_"


class Env:

    def __init__(self):
        raise RuntimeError("Env class should not be instantiated")

    @staticmethod
    def key(name: str) -> str:
        return f"{ENV_PREFIX}{name.upper()}"

    @staticmethod
    def is_set(name: str) -> bool:
        return os.getenv(Env.key(name)) is not None

    @staticmethod
    def get_int(name: str, default_value: int) -> int:
        return Env.get(name, int, default_value)

    @staticmethod
    def get_float(name: str, default_value: float) -> float:
        return Env.get(name, float, default_value)

    @staticmethod
    def get_bool(name: str, default_value: bool) -> bool:
        return Env.get(name, lambda v: v.strip().lower() in ('1', 'true', 'yes', 'on'), default_value)

    @staticmethod
    def get_str(name: str, default_value: Optional[str]) -> Optional[str]:
        return Env.get(name, str, default_value)

    @staticmethod
    def get_list(name: str, default_value: List[str]) -> List[str]:
        return Env.get(name, lambda v: [item.strip() for item in v.split(',') if item.strip()], default_value)

    @staticmethod
    def get(name: str, function: Callable[[str], T], default_value: T) -> T:
        env_value = os.getenv(Env.key(name))
        if env_value is not None:
            try:
                return function(env_value)
            except (ValueError, TypeError):
                return default_value
        return default_value
