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
Parsers for compose-style stack descriptors.
"""
import logging
import os
import re
import shlex
from typing import Dict, Any, List, Optional

import yaml
from pydantic import ValidationError

from ..errors import ConfigurationError, DescriptorError, MissingKeyError
from ..MODELS.stack import DEFAULT_NETWORK, NetworkDefinition, Stack, VolumeDefinition
from ..MODELS.service_definition import (
    BuildSource,
    DependencyCondition,
    HealthCheck,
    MountType,
    PortMapping,
    RestartPolicy,
    RestartPolicyCondition,
    ServiceDefinition,
    VolumeMount,
)
from ..UTILS.durations import parse_duration
from .config_resolver import ConfigurationResolver
from .env_parser import EnvironmentSource, EnvParser
from .stack_validator import StackValidator

logger = logging.getLogger(__name__)

KNOWN_SERVICE_KEYS = {
    'image', 'build', 'command', 'entrypoint', 'working_dir', 'environment',
    'ports', 'networks', 'hostname', 'volumes', 'restart', 'deploy',
    'healthcheck', 'depends_on', 'labels', 'container_name',
}

RESTART_ALIASES = {
    'never': RestartPolicyCondition.NO,
    'none': RestartPolicyCondition.NO,
    'any': RestartPolicyCondition.ALWAYS,
}


class ComposeParser:
    """
    Parser for stack descriptors (docker-compose.yml syntax).
    """
    def __init__(self,
                 env_source: Optional[EnvironmentSource] = None,
                 base_dir: str = ".",
                 validate: bool = True):
        """
        Initializes the parser with the environment source used for interpolation.

        :param env_source: Variables available to ``${KEY}`` placeholders.
        :param base_dir: Directory relative paths in the descriptor are resolved against.
        :param validate: Run the stack invariants after parsing.
        """
        self.env_source = env_source if env_source is not None else EnvironmentSource()
        self.base_dir = os.path.abspath(base_dir)
        self.resolver = ConfigurationResolver(self.env_source)
        self.validate = validate

    def parse(self, compose_path: str) -> Stack:
        """
        Parses a descriptor from a path.

        :param compose_path: Path to the descriptor.
        :return: Validated stack.
        """
        with open(compose_path, 'r') as f:
            content = f.read()
        return self.parse_from_string(content)

    def parse_from_string(self, content: str) -> Stack:
        """
        Parses a descriptor from a string.

        :param content: YAML content of the descriptor.
        :return: Validated stack.
        :raises ConfigurationError: If the descriptor or the stack it describes is invalid.
        """
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise DescriptorError(f"invalid YAML: {e}") from e
        return self.parse_dict(data)

    def parse_dict(self, data: Any) -> Stack:
        if not isinstance(data, dict):
            raise DescriptorError("descriptor must be a mapping with a 'services' section")
        services_spec = data.get('services')
        if not isinstance(services_spec, dict) or not services_spec:
            raise DescriptorError("descriptor declares no services")

        data = self.resolver.resolve(data)

        services = {}
        for name, spec in data['services'].items():
            name = str(name)
            if spec is None:
                spec = {}
            if not isinstance(spec, dict):
                raise DescriptorError("service definition must be a mapping", name)
            services[name] = self._parse_service(name, spec)

        networks = self._parse_resources(data.get('networks'), 'networks', NetworkDefinition)
        uses_default = any(DEFAULT_NETWORK in s.networks for s in services.values())
        if uses_default and DEFAULT_NETWORK not in networks:
            networks[DEFAULT_NETWORK] = NetworkDefinition(name=DEFAULT_NETWORK)

        volumes = self._parse_resources(data.get('volumes'), 'volumes', VolumeDefinition)

        try:
            stack = Stack(
                project=self._project_name(data.get('name')),
                base_dir=self.base_dir,
                services=services,
                networks=networks,
                volumes=volumes,
            )
        except ValidationError as e:
            raise DescriptorError(str(e)) from e

        if self.validate:
            StackValidator(stack).validate()
        logger.info("Loaded stack '%s' with %d services", stack.project, len(services))
        return stack

    def _project_name(self, declared: Optional[str]) -> str:
        name = str(declared) if declared else os.path.basename(self.base_dir) or "stackup"
        name = re.sub(r'[^a-z0-9_-]', '', name.lower())
        return name or "stackup"

    def _parse_resources(self, spec: Any, section: str, model) -> Dict[str, Any]:
        if not spec:
            return {}
        if not isinstance(spec, dict):
            raise DescriptorError(f"top-level '{section}' must be a mapping")
        resources = {}
        for name, options in spec.items():
            options = options or {}
            if not isinstance(options, dict):
                raise DescriptorError(f"{section}.{name} must be a mapping")
            external = options.get('external', False)
            if isinstance(external, dict):
                external = True
            try:
                resources[name] = model(
                    name=name,
                    driver=options.get('driver', model.model_fields['driver'].default),
                    external=bool(external),
                    labels=self._to_str_dict(options.get('labels', {}), name),
                    **({'internal': bool(options.get('internal', False))}
                       if model is NetworkDefinition else {}),
                )
            except ValidationError as e:
                raise DescriptorError(f"{section}.{name}: {e}") from e
        return resources

    def _parse_service(self, name: str, spec: Dict[str, Any]) -> ServiceDefinition:
        """
        Parses a single service definition from the descriptor.

        :param name: The name of the service.
        :param spec: The service specification dictionary.
        :return: A ServiceDefinition instance.
        """
        for key in spec:
            if key not in KNOWN_SERVICE_KEYS and not str(key).startswith('x-'):
                logger.warning("Service %s: ignoring unsupported key '%s'", name, key)

        try:
            return ServiceDefinition(
                name=name,
                image=spec.get('image'),
                build=self._parse_build(spec.get('build')),
                command=self._to_list(name, spec.get('command')),
                entrypoint=self._to_list(name, spec.get('entrypoint')),
                working_dir=spec.get('working_dir'),
                environment=self._parse_environment(name, spec.get('environment')),
                ports=[self._parse_port(name, p) for p in spec.get('ports') or []],
                networks=self._parse_networks(spec.get('networks')),
                hostname=spec.get('hostname'),
                volumes=[self._parse_volume(name, v) for v in spec.get('volumes') or []],
                restart_policy=self._parse_restart(name, spec),
                health_check=self._parse_healthcheck(name, spec.get('healthcheck')),
                depends_on=self._parse_depends_on(name, spec.get('depends_on')),
                labels=self._to_str_dict(spec.get('labels', {}), name),
            )
        except ValidationError as e:
            raise DescriptorError(self._format_validation(e), name) from e
        except KeyError as e:
            raise DescriptorError(f"missing required key {e}", name) from e
        except (TypeError, ValueError, AttributeError) as e:
            raise DescriptorError(f"malformed service definition: {e}", name) from e

    @staticmethod
    def _format_validation(error: ValidationError) -> str:
        parts = []
        for item in error.errors():
            loc = ".".join(str(p) for p in item.get('loc', ()))
            msg = item.get('msg', '')
            parts.append(f"{loc}: {msg}" if loc else msg)
        return "; ".join(parts)

    def _parse_build(self, build: Any) -> Optional[BuildSource]:
        if build is None:
            return None
        if isinstance(build, str):
            return BuildSource(context=build)
        if isinstance(build, dict):
            return BuildSource(
                context=build.get('context', '.'),
                dockerfile=build.get('dockerfile', 'Dockerfile'),
                args=self._to_str_dict(build.get('args', {}), None),
            )
        raise DescriptorError("'build' must be a path or a mapping")

    def _parse_environment(self, name: str, env_spec: Any) -> Dict[str, str]:
        environment = {}
        if not env_spec:
            return environment
        if isinstance(env_spec, list):
            for e in env_spec:
                e = str(e)
                if '=' in e:
                    k, v = e.split('=', 1)
                    environment[k] = v
                else:
                    environment[e] = self._from_env_source(name, e)
        elif isinstance(env_spec, dict):
            for k, v in env_spec.items():
                environment[str(k)] = (
                    self._from_env_source(name, str(k)) if v is None else self._scalar(v)
                )
        else:
            raise DescriptorError("'environment' must be a list or a mapping", name)
        return environment

    def _from_env_source(self, service: str, key: str) -> str:
        if key not in self.env_source:
            raise MissingKeyError(key, service)
        return self.env_source[key]

    def _parse_port(self, name: str, port: Any) -> PortMapping:
        if isinstance(port, int) and not isinstance(port, bool):
            return PortMapping(container=port)
        if isinstance(port, dict):
            try:
                return PortMapping(
                    container=int(port['target']),
                    host=int(port['published']) if port.get('published') is not None else None,
                    protocol=port.get('protocol', 'tcp'),
                    host_ip=port.get('host_ip'),
                )
            except (KeyError, TypeError, ValueError) as e:
                raise DescriptorError(f"invalid port mapping {port!r}", name) from e
        if isinstance(port, str):
            spec, _, protocol = port.partition('/')
            parts = spec.rsplit(':', 2)
            try:
                if len(parts) == 1:
                    return PortMapping(container=int(parts[0]), protocol=protocol or 'tcp')
                if len(parts) == 2:
                    return PortMapping(container=int(parts[1]),
                                       host=int(parts[0]) if parts[0] else None,
                                       protocol=protocol or 'tcp')
                return PortMapping(container=int(parts[2]),
                                   host=int(parts[1]) if parts[1] else None,
                                   host_ip=parts[0] or None,
                                   protocol=protocol or 'tcp')
            except ValueError as e:
                raise DescriptorError(f"invalid port mapping '{port}'", name) from e
        raise DescriptorError(f"invalid port mapping {port!r}", name)

    def _parse_volume(self, name: str, volume: Any) -> VolumeMount:
        if isinstance(volume, dict):
            if not volume.get('target'):
                raise DescriptorError(f"volume {volume!r} has no 'target'", name)
            source = str(volume.get('source') or '')
            mount_type = volume.get('type') or (
                'bind' if self._is_host_path(source) else 'volume')
            if mount_type not in ('bind', 'volume'):
                raise DescriptorError(f"unsupported mount type '{mount_type}'", name)
            return VolumeMount(source=source,
                               target=str(volume['target']),
                               type=MountType(mount_type),
                               read_only=bool(volume.get('read_only', False)))
        if not isinstance(volume, str):
            raise DescriptorError(f"invalid volume {volume!r}", name)

        parts = volume.split(':')
        if len(parts) == 1:
            # Anonymous volume, private to this service.
            return VolumeMount(source='', target=parts[0])
        if len(parts) > 3:
            raise DescriptorError(f"invalid volume '{volume}'", name)
        source, target = parts[0], parts[1]
        mode = parts[2] if len(parts) == 3 else 'rw'
        if mode not in ('ro', 'rw'):
            raise DescriptorError(f"invalid volume mode '{mode}' in '{volume}'", name)
        return VolumeMount(
            source=source,
            target=target,
            type=MountType.BIND if self._is_host_path(source) else MountType.VOLUME,
            read_only=(mode == 'ro'),
        )

    @staticmethod
    def _is_host_path(source: str) -> bool:
        return source.startswith(('.', '/', '~'))

    @staticmethod
    def _parse_networks(networks: Any) -> List[str]:
        if not networks:
            return [DEFAULT_NETWORK]
        if isinstance(networks, dict):
            return list(networks.keys())
        return [str(n) for n in networks]

    def _parse_restart(self, name: str, spec: Dict[str, Any]) -> RestartPolicy:
        options: Dict[str, Any] = {}
        restart = spec.get('restart')
        deploy = spec.get('deploy') or {}
        deploy_policy = deploy.get('restart_policy') if isinstance(deploy, dict) else None
        extra = spec.get('x-restart') or {}
        if deploy_policy is not None and not isinstance(deploy_policy, dict):
            raise DescriptorError("'deploy.restart_policy' must be a mapping", name)
        if not isinstance(extra, dict):
            raise DescriptorError("'x-restart' must be a mapping", name)

        try:
            if restart is not None:
                restart = str(restart)
                condition, _, retries = restart.partition(':')
                options['condition'] = RESTART_ALIASES.get(condition, condition)
                if retries:
                    options['max_retries'] = int(retries)
            elif deploy_policy:
                condition = deploy_policy.get('condition', 'any')
                options['condition'] = RESTART_ALIASES.get(condition, condition)
                if 'max_attempts' in deploy_policy:
                    options['max_retries'] = int(deploy_policy['max_attempts'])
                if 'delay' in deploy_policy:
                    options['delay'] = parse_duration(deploy_policy['delay'])

            for key in ('delay', 'max_delay'):
                if key in extra:
                    options[key] = parse_duration(extra[key])
            if 'backoff' in extra:
                options['backoff'] = extra['backoff']
            if 'max_retries' in extra:
                options['max_retries'] = int(extra['max_retries'])

            return RestartPolicy(**options)
        except (ValidationError, ValueError, TypeError) as e:
            raise DescriptorError(f"invalid restart policy '{restart}'", name) from e

    def _parse_healthcheck(self, name: str, hc: Any) -> Optional[HealthCheck]:
        if not hc:
            return None
        if not isinstance(hc, dict):
            raise DescriptorError("'healthcheck' must be a mapping", name)
        if hc.get('disable'):
            return None
        test = hc.get('test')
        if isinstance(test, str):
            test = ['CMD-SHELL', test]
        if not test:
            raise DescriptorError("healthcheck requires a 'test'", name)
        if not isinstance(test, list):
            raise DescriptorError("healthcheck 'test' must be a string or a list", name)
        options: Dict[str, Any] = {'test': [str(t) for t in test]}
        try:
            for key in ('interval', 'timeout', 'start_period'):
                if key in hc:
                    options[key] = parse_duration(hc[key])
        except ValueError as e:
            raise DescriptorError(str(e), name) from e
        if 'retries' in hc:
            try:
                options['retries'] = int(hc['retries'])
            except (TypeError, ValueError) as e:
                raise DescriptorError(f"invalid healthcheck retries {hc['retries']!r}", name) from e
        return HealthCheck(**options)

    @staticmethod
    def _parse_depends_on(name: str, depends_on: Any) -> Dict[str, DependencyCondition]:
        if not depends_on:
            return {}
        if isinstance(depends_on, list):
            return {str(d): DependencyCondition.STARTED for d in depends_on}
        if isinstance(depends_on, dict):
            result = {}
            for dep, options in depends_on.items():
                if options is not None and not isinstance(options, dict):
                    raise DescriptorError(
                        f"dependency '{dep}' must be a mapping with a 'condition'", name)
                condition = (options or {}).get('condition', DependencyCondition.STARTED.value)
                try:
                    result[str(dep)] = DependencyCondition(condition)
                except ValueError as e:
                    raise DescriptorError(
                        f"unknown dependency condition '{condition}' for '{dep}'", name) from e
            return result
        raise DescriptorError("'depends_on' must be a list or a mapping", name)

    def _to_str_dict(self, value: Any, service: Optional[str]) -> Dict[str, str]:
        if not value:
            return {}
        if isinstance(value, list):
            return dict(str(item).split('=', 1) if '=' in str(item) else (str(item), '')
                        for item in value)
        if isinstance(value, dict):
            return {str(k): self._scalar(v) for k, v in value.items()}
        raise DescriptorError(f"expected a mapping, got {value!r}", service)

    @staticmethod
    def _scalar(value: Any) -> str:
        if isinstance(value, bool):
            return 'true' if value else 'false'
        if value is None:
            return ''
        return str(value)

    def _to_list(self, name: str, val: Any) -> List[str]:
        """
        Helper to ensure a value is a list of strings. Strings are split
        the way a shell would split them.

        :param name: The service the value belongs to.
        :param val: The value to convert.
        :return: A list of strings.
        """
        if val is None:
            return []
        if isinstance(val, str):
            try:
                return shlex.split(val)
            except ValueError as e:
                raise DescriptorError(f"cannot split {val!r}: {e}", name) from e
        if not isinstance(val, list):
            raise DescriptorError(f"expected a string or a list, got {val!r}", name)
        return [str(v) for v in val]


def load_stack(compose_path: str,
               env_file: Optional[str] = None,
               validate: bool = True) -> Stack:
    """
    Loads the environment source and the descriptor for one invocation.

    The environment file defaults to ``.env`` next to the descriptor and
    is optional unless given explicitly.
    """
    base_dir = os.path.dirname(os.path.abspath(compose_path))
    if env_file:
        if not os.path.exists(env_file):
            raise ConfigurationError(f"environment file '{env_file}' not found")
        env_source = EnvParser.parse(env_file)
    else:
        env_source = EnvParser.load_optional(os.path.join(base_dir, '.env'))
    parser = ComposeParser(env_source, base_dir=base_dir, validate=validate)
    return parser.parse(compose_path)
