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
Managers for handling environment variables and .env file resolution.
"""
import logging
import os
from typing import Dict, Optional

from dotenv import dotenv_values

from ..MODELS.service_spec import ServiceSpec

logger = logging.getLogger(__name__)


class EnvironmentManager:
    """
    Builds the environment handed to the runtime driver for a service.
    """
    def __init__(self, base_dir: str = ".", inherit: Optional[Dict[str, str]] = None):
        """
        Initializes the environment manager.

        :param base_dir: The base directory for resolving relative paths to .env files.
        :param inherit: Variables every service starts from. Defaults to the
            current process environment.
        """
        self.base_dir = base_dir
        self.inherit = dict(os.environ) if inherit is None else inherit

    def get_merged_environment(self,
                               spec: ServiceSpec,
                               discovery_env: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        """
        Merges, lowest priority first: the inherited environment, the
        service's .env files (later files override earlier ones),
        service discovery variables and the explicit environment.

        Missing .env files are skipped with a warning.

        :param spec: The service being started.
        :param discovery_env: Addresses of the service's dependencies.
        :return: A dictionary containing the merged environment variables.
        """
        merged_env = dict(self.inherit)

        for env_file in spec.env_files:
            file_path = os.path.join(self.base_dir, env_file)
            if not os.path.exists(file_path):
                logger.warning("[%s] env file %s not found", spec.name, file_path)
                continue
            file_env = dotenv_values(file_path)
            merged_env.update({k: v for k, v in file_env.items() if v is not None})

        if discovery_env:
            merged_env.update(discovery_env)

        merged_env.update(spec.environment)
        return merged_env
