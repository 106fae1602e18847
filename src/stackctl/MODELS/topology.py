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
Models for a complete deployment unit.
"""
from typing import Dict, List
from pydantic import BaseModel, ConfigDict, model_validator
from .service_spec import ServiceSpec


class VolumeSpec(BaseModel):
    """
    A named volume declared at the top level of the document.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    labels: Dict[str, str] = {}


class Topology(BaseModel):
    """
    Complete declared set of services and volumes for one deployment.
    Equivalent to a parsed docker-compose.yml file.

    Services keep their declaration order, which the planner uses to break
    ties between independent services.
    """
    model_config = ConfigDict(frozen=True)

    name: str = "default"
    services: Dict[str, ServiceSpec] = {}
    volumes: Dict[str, VolumeSpec] = {}
    networks: List[str] = []

    @model_validator(mode="after")
    def _check_references(self) -> "Topology":
        for key, svc in self.services.items():
            if key != svc.name:
                raise ValueError(f"service registered as {key} is named {svc.name}")
            for dep in svc.depends_on:
                if dep not in self.services:
                    raise ValueError(f"service {svc.name} depends on undeclared service {dep}")
            for volume in svc.named_volumes():
                if volume not in self.volumes:
                    raise ValueError(f"service {svc.name} refers to undeclared volume {volume}")
            for network in svc.networks:
                if network != "default" and network not in self.networks:
                    raise ValueError(f"service {svc.name} refers to undeclared network {network}")
        return self

    def service_names(self) -> List[str]:
        return list(self.services)

    def services_using_volume(self, volume: str) -> List[str]:
        """
        :param volume: Name of a named volume.
        :return: Names of the services mounting it.
        """
        return [name for name, svc in self.services.items() if volume in svc.named_volumes()]
