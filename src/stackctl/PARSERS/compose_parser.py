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
Parsers for Docker Compose style YAML files.

Parsing a string is pure: it only reads the interpolation context handed
to the parser and never talks to the runtime driver. Every failure is
reported as a SpecError and no partial Topology is returned.
"""
import os
import re
import shlex
import yaml
from typing import Dict, Any, List, Optional
from pydantic import ValidationError
from ..errors import SpecError
from ..MODELS.topology import Topology, VolumeSpec
from ..MODELS.service_spec import (
    ServiceSpec,
    RestartPolicy,
    RestartPolicyCondition,
    PortMapping,
    VolumeMount,
)
from ..UTILS.string_interpolation import EnvironmentInterpolator, InterpolationError

TOP_LEVEL_KEYS = {'version', 'name', 'services', 'volumes', 'networks'}

SERVICE_KEYS = {
    'image', 'build', 'command', 'entrypoint', 'working_dir', 'environment',
    'env_file', 'ports', 'volumes', 'depends_on', 'restart', 'hostname',
    'stop_grace_period', 'networks', 'labels',
}

RESTART_ALIASES = {
    'no': RestartPolicyCondition.NEVER,
    'never': RestartPolicyCondition.NEVER,
    'always': RestartPolicyCondition.ALWAYS,
    'unless-stopped': RestartPolicyCondition.UNLESS_STOPPED,
    'on-failure': RestartPolicyCondition.ON_FAILURE,
}

_PORT_RE = re.compile(
    r'^(?:(?P<ip>\[[0-9a-fA-F:]+\]|\d+\.\d+\.\d+\.\d+):)?'
    r'(?:(?P<host>\d+(?:-\d+)?)?:)?'
    r'(?P<container>\d+(?:-\d+)?)'
    r'(?:/(?P<proto>tcp|udp|sctp))?$'
)

_DURATION_RE = re.compile(r'(\d+(?:\.\d+)?)(ms|us|h|m|s)')
_DURATION_UNITS = {'h': 3600.0, 'm': 60.0, 's': 1.0, 'ms': 0.001, 'us': 0.000001}


class _StrictLoader(yaml.SafeLoader):
    """SafeLoader that rejects duplicate keys instead of keeping the last one."""


def _construct_mapping(loader: _StrictLoader, node: yaml.MappingNode, deep: bool = False) -> Dict[Any, Any]:
    loader.flatten_mapping(node)
    mapping: Dict[Any, Any] = {}
    for key_node, value_node in node.value:
        key = loader.construct_object(key_node, deep=deep)
        try:
            hash(key)
        except TypeError:
            raise SpecError(f"Unhashable key at line {key_node.start_mark.line + 1}") from None
        if key in mapping:
            raise SpecError(f"Duplicate key {key!r} at line {key_node.start_mark.line + 1}")
        mapping[key] = loader.construct_object(value_node, deep=deep)
    return mapping


_StrictLoader.add_constructor(yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG, _construct_mapping)


def parse_duration(value: Any) -> float:
    """
    Converts a compose duration (``1m30s``, ``500ms``, ``10``) to seconds.

    :param value: Duration string or number of seconds.
    :return: Seconds as a float.
    :raises SpecError: If the value is not a duration.
    """
    if isinstance(value, bool):
        raise SpecError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if re.fullmatch(r'\d+(?:\.\d+)?', text):
        return float(text)
    pos = 0
    total = 0.0
    for match in _DURATION_RE.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text) or not text:
        raise SpecError(f"Invalid duration: {value!r}")
    return total


def _expand_range(text: str) -> List[int]:
    if '-' in text:
        start, end = (int(p) for p in text.split('-', 1))
        if end < start or end > 65535:
            raise SpecError(f"Invalid port range: {text}")
        return list(range(start, end + 1))
    return [int(text)]


class ComposeParser:
    """
    Parser for docker-compose.yml files.
    """
    def __init__(self, context: Optional[Dict[str, str]] = None):
        """
        Initializes the parser with an optional environment context for interpolation.

        :param context: A dictionary of environment variables for interpolation.
        """
        self.context = dict(os.environ) if context is None else context

    def parse(self, compose_path: str) -> Topology:
        """
        Parses a compose file from a path.

        The project name defaults to the name of the directory holding the file.

        :param compose_path: Path to the compose file.
        :return: Parsed topology.
        """
        try:
            with open(compose_path, 'r') as f:
                content = f.read()
        except OSError as e:
            raise SpecError(f"Cannot read {compose_path}: {e}") from e
        project = os.path.basename(os.path.dirname(os.path.abspath(compose_path)))
        return self.parse_from_string(content, default_name=project or 'default')

    def parse_from_string(self, content: str, default_name: str = 'default') -> Topology:
        """
        Parses a compose file from a string.

        :param content: YAML content of the compose file.
        :param default_name: Project name used when the document has none.
        :return: Parsed topology.
        """
        try:
            data = yaml.load(content, Loader=_StrictLoader)
        except (yaml.YAMLError, ValueError) as e:
            raise SpecError(f"Invalid YAML: {e}") from e
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise SpecError("Top level of the document must be a mapping")

        self._check_keys(data, TOP_LEVEL_KEYS, 'top level')
        data = self._interpolate(data)

        volumes = {}
        for name, spec in self._mapping(data.get('volumes'), 'volumes').items():
            name = str(name)
            if spec is not None and not isinstance(spec, dict):
                raise SpecError(f"Volume {name} must be a mapping")
            volumes[name] = VolumeSpec(name=name, labels=self._labels((spec or {}).get('labels'), f"volume {name}"))
        networks = [str(n) for n in self._mapping(data.get('networks'), 'networks')]

        services_data = self._mapping(data.get('services'), 'services')
        services = {}
        for name, spec in services_data.items():
            name = str(name)
            services[name] = self._parse_service(name, spec)

        try:
            return Topology(
                name=str(data.get('name') or default_name),
                services=services,
                volumes=volumes,
                networks=networks,
            )
        except ValidationError as e:
            raise SpecError(self._describe(e)) from e

    def _parse_service(self, name: str, spec: Any) -> ServiceSpec:
        """
        Parses a single service definition from a compose file.

        :param name: The name of the service.
        :param spec: The service specification dictionary.
        :return: A ServiceSpec instance.
        """
        if spec is None:
            spec = {}
        if not isinstance(spec, dict):
            raise SpecError(f"Service {name} must be a mapping")
        self._check_keys(spec, SERVICE_KEYS, f"service {name}")

        build = spec.get('build')
        build_context, dockerfile, build_args = None, None, {}
        if isinstance(build, dict):
            build_context = build.get('context', '.')
            dockerfile = build.get('dockerfile')
            build_args = self._environment(build.get('args'), f"service {name} build args")
        elif build is not None:
            build_context = str(build)

        grace = spec.get('stop_grace_period')
        try:
            return ServiceSpec(
                name=name,
                image=spec.get('image'),
                build_context=build_context,
                dockerfile=dockerfile,
                build_args=build_args,
                command=self._command(spec.get('command')),
                entrypoint=self._command(spec.get('entrypoint')),
                working_dir=spec.get('working_dir'),
                environment=self._environment(spec.get('environment'), f"service {name}"),
                env_files=self._to_list(spec.get('env_file')),
                ports=self._ports(name, spec.get('ports')),
                networks=self._networks(spec.get('networks')),
                hostname=spec.get('hostname'),
                volumes=self._volumes(name, spec.get('volumes')),
                restart_policy=self._restart(name, spec.get('restart')),
                depends_on=self._depends_on(name, spec.get('depends_on')),
                stop_grace_period=parse_duration(grace) if grace is not None else None,
                labels=self._labels(spec.get('labels'), f"service {name}"),
            )
        except ValidationError as e:
            raise SpecError(f"Service {name}: {self._describe(e)}") from e

    def _restart(self, name: str, value: Any) -> RestartPolicy:
        if value is None or value is False:
            return RestartPolicy()
        text = str(value).strip()
        condition, _, retries = text.partition(':')
        if condition not in RESTART_ALIASES:
            raise SpecError(f"Service {name}: unknown restart policy {text!r}")
        if retries and condition != 'on-failure':
            raise SpecError(f"Service {name}: only on-failure accepts a retry count")
        try:
            max_retries = int(retries) if retries else 0
        except ValueError:
            raise SpecError(f"Service {name}: invalid retry count in {text!r}") from None
        if max_retries < 0:
            raise SpecError(f"Service {name}: invalid retry count in {text!r}")
        return RestartPolicy(condition=RESTART_ALIASES[condition], max_retries=max_retries)

    def _ports(self, name: str, value: Any) -> List[PortMapping]:
        ports: List[PortMapping] = []
        for p in self._list(value, f"service {name} ports"):
            if isinstance(p, dict):
                if 'target' not in p:
                    raise SpecError(f"Service {name}: port mapping {p} has no target")
                published = p.get('published')
                try:
                    container_port = int(p['target'])
                    host_port = int(published) if published not in (None, '') else None
                except (TypeError, ValueError):
                    raise SpecError(f"Service {name}: malformed port mapping {p}") from None
                ports.append(PortMapping(
                    container_port=container_port,
                    host_port=host_port,
                    host_ip=p.get('host_ip'),
                    protocol=p.get('protocol', 'tcp'),
                ))
                continue
            match = _PORT_RE.match(str(p).strip())
            if not match:
                raise SpecError(f"Service {name}: malformed port mapping {p!r}")
            container = _expand_range(match.group('container'))
            host = _expand_range(match.group('host')) if match.group('host') else [None] * len(container)
            if len(host) != len(container):
                raise SpecError(f"Service {name}: port ranges differ in size in {p!r}")
            ip = match.group('ip')
            for host_port, container_port in zip(host, container):
                try:
                    ports.append(PortMapping(
                        container_port=container_port,
                        host_port=host_port,
                        host_ip=ip.strip('[]') if ip else None,
                        protocol=match.group('proto') or 'tcp',
                    ))
                except ValidationError as e:
                    raise SpecError(f"Service {name}: malformed port mapping {p!r}: {self._describe(e)}") from e
        return ports

    def _volumes(self, name: str, value: Any) -> List[VolumeMount]:
        mounts: List[VolumeMount] = []
        for v in self._list(value, f"service {name} volumes"):
            if isinstance(v, dict):
                if not v.get('source') or not v.get('target'):
                    raise SpecError(f"Service {name}: volume mapping {v} needs a source and a target")
                if v.get('type', 'volume') not in ('volume', 'bind'):
                    raise SpecError(f"Service {name}: unsupported volume type {v.get('type')!r}")
                mounts.append(VolumeMount(
                    source=str(v['source']),
                    target=str(v['target']),
                    read_only=bool(v.get('read_only', False)),
                ))
                continue
            parts = str(v).split(':')
            if len(parts) == 3 and parts[2] in ('ro', 'rw'):
                read_only = parts[2] == 'ro'
            elif len(parts) == 2:
                read_only = False
            else:
                raise SpecError(f"Service {name}: malformed volume mapping {v!r}")
            if not parts[0] or not parts[1].startswith('/'):
                raise SpecError(f"Service {name}: malformed volume mapping {v!r}")
            mounts.append(VolumeMount(source=parts[0], target=parts[1], read_only=read_only))
        return mounts

    def _depends_on(self, name: str, value: Any) -> List[str]:
        if value is None:
            return []
        if isinstance(value, dict):
            for dep, opts in value.items():
                if opts is not None and not isinstance(opts, dict):
                    raise SpecError(f"Service {name}: depends_on entry for {dep} must be a mapping")
                condition = (opts or {}).get('condition', 'service_started')
                if condition != 'service_started':
                    raise SpecError(f"Service {name}: unsupported depends_on condition {condition!r} for {dep}")
            deps = [str(d) for d in value]
        else:
            deps = [str(d) for d in self._list(value, f"service {name} depends_on")]
        if len(set(deps)) != len(deps):
            raise SpecError(f"Service {name}: duplicate entries in depends_on")
        return deps

    def _environment(self, value: Any, where: str) -> Dict[str, str]:
        environment: Dict[str, str] = {}
        if value is None:
            return environment
        if isinstance(value, dict):
            items = value.items()
        elif isinstance(value, list):
            items = []
            for e in value:
                key, sep, val = str(e).partition('=')
                items.append((key, val if sep else None))
        else:
            raise SpecError(f"{where}: environment must be a list or a mapping")
        for key, val in items:
            key = str(key).strip()
            if not key:
                raise SpecError(f"{where}: empty environment variable name")
            if val is None:
                # Bare keys take their value from the host
                if key in self.context:
                    environment[key] = self.context[key]
                continue
            environment[key] = self._scalar(val)
        return environment

    def _labels(self, value: Any, where: str) -> Dict[str, str]:
        return self._environment(value, where)

    def _networks(self, value: Any) -> List[str]:
        if isinstance(value, dict):
            return [str(n) for n in value]
        return [str(n) for n in self._list(value, 'networks')]

    def _interpolate(self, node: Any) -> Any:
        if isinstance(node, str):
            try:
                return EnvironmentInterpolator.interpolate(node, self.context)
            except InterpolationError as e:
                raise SpecError(str(e)) from e
        if isinstance(node, dict):
            return {k: self._interpolate(v) for k, v in node.items()}
        if isinstance(node, list):
            return [self._interpolate(v) for v in node]
        return node

    def _check_keys(self, data: Dict[str, Any], allowed: set, where: str) -> None:
        unknown = [
            k for k in data
            if k not in allowed and not (isinstance(k, str) and k.startswith('x-'))
        ]
        if unknown:
            raise SpecError(f"Unknown field(s) in {where}: {', '.join(map(str, unknown))}")

    @staticmethod
    def _mapping(value: Any, where: str) -> Dict[Any, Any]:
        if value is None:
            return {}
        if isinstance(value, list):
            # `volumes: [data]` style shorthand
            if not all(isinstance(v, (str, int)) for v in value):
                raise SpecError(f"{where} must be a mapping or a list of names")
            return {v: None for v in value}
        if not isinstance(value, dict):
            raise SpecError(f"{where} must be a mapping")
        return value

    @staticmethod
    def _list(value: Any, where: str) -> List[Any]:
        if value is None:
            return []
        if not isinstance(value, list):
            raise SpecError(f"{where} must be a list")
        return value

    def _command(self, val: Any) -> List[str]:
        if val is None:
            return []
        if isinstance(val, str):
            try:
                return shlex.split(val)
            except ValueError as e:
                raise SpecError(f"Cannot split command {val!r}: {e}") from e
        if not isinstance(val, list):
            raise SpecError(f"Command must be a string or a list, got {val!r}")
        return [self._scalar(v) for v in val]

    def _to_list(self, val: Any) -> List[str]:
        """
        Helper to ensure a value is a list of strings.

        :param val: The value to convert.
        :return: A list of strings.
        """
        if val is None:
            return []
        if isinstance(val, str):
            return [val]
        if not isinstance(val, list):
            raise SpecError(f"Expected a string or a list, got {val!r}")
        return [str(v) for v in val]

    @staticmethod
    def _scalar(val: Any) -> str:
        if isinstance(val, bool):
            return 'true' if val else 'false'
        if val is None:
            return ''
        return str(val)

    @staticmethod
    def _describe(error: ValidationError) -> str:
        return '; '.join(
            f"{'.'.join(str(p) for p in err['loc']) or 'value'}: {err['msg']}"
            for err in error.errors()
        )
