# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
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

"""
Tunables for the orchestrator.
"""
from typing import Optional
from pydantic import BaseModel, Field


class OrchestratorSettings(BaseModel):
    """
    Timeouts and paths used while driving services.

    Durations are in seconds. A service's own ``stop_grace_period``
    overrides ``stop_grace_period`` here.

    A run that stays up for ``restart_reset_after`` seconds resets the
    restart backoff and the ``on-failure`` retry ceiling.
    """
    state_dir: str = ".stackctl"
    stop_grace_period: float = Field(default=10.0, ge=0.0)
    kill_timeout: float = Field(default=5.0, gt=0.0)
    start_timeout: Optional[float] = Field(default=60.0, gt=0.0)
    restart_max_delay: float = Field(default=300.0, gt=0.0)
    restart_reset_after: float = Field(default=10.0, ge=0.0)
    up_timeout: Optional[float] = Field(default=None, gt=0.0)
