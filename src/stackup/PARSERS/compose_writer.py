"""
Serialisation of a stack back to the descriptor format.
"""
from typing import Any, Dict

import yaml

from ..MODELS.service_definition import (
    DependencyCondition,
    RestartPolicy,
    RestartPolicyCondition,
    ServiceDefinition,
)
from ..MODELS.stack import DEFAULT_NETWORK, Stack
from ..UTILS.durations import format_duration


class ComposeWriter:
    """
    Writes a Stack as a descriptor that parses back into an equivalent Stack.

    Values are emitted fully resolved; ``$`` is escaped as ``$$`` so the
    output does not pick up new placeholders when it is parsed again.
    """

    def dump(self, stack: Stack) -> str:
        return yaml.safe_dump(self.to_dict(stack), sort_keys=False, default_flow_style=False)

    def to_dict(self, stack: Stack) -> Dict[str, Any]:
        data: Dict[str, Any] = {'name': stack.project, 'services': {}}
        for name, svc in stack.services.items():
            data['services'][name] = self._service(svc)

        networks = {
            name: self._resource(net.driver, 'bridge', net.external, net.labels,
                                 {'internal': True} if net.internal else {})
            for name, net in stack.networks.items()
        }
        if networks:
            data['networks'] = networks
        volumes = {
            name: self._resource(vol.driver, 'local', vol.external, vol.labels, {})
            for name, vol in stack.volumes.items()
        }
        if volumes:
            data['volumes'] = volumes
        return data

    @staticmethod
    def _escape(value: str) -> str:
        return value.replace('$', '$$')

    def _resource(self, driver, default_driver, external, labels, extra) -> Dict[str, Any]:
        out: Dict[str, Any] = dict(extra)
        if driver != default_driver:
            out['driver'] = driver
        if external:
            out['external'] = True
        if labels:
            out['labels'] = {k: self._escape(v) for k, v in labels.items()}
        return out

    def _service(self, svc: ServiceDefinition) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        if svc.image:
            out['image'] = self._escape(svc.image)
        if svc.build:
            build: Dict[str, Any] = {'context': self._escape(svc.build.context)}
            if svc.build.dockerfile != 'Dockerfile':
                build['dockerfile'] = self._escape(svc.build.dockerfile)
            if svc.build.args:
                build['args'] = {k: self._escape(v) for k, v in svc.build.args.items()}
            out['build'] = build
        if svc.entrypoint:
            out['entrypoint'] = [self._escape(a) for a in svc.entrypoint]
        if svc.command:
            out['command'] = [self._escape(a) for a in svc.command]
        if svc.working_dir:
            out['working_dir'] = self._escape(svc.working_dir)
        if svc.hostname:
            out['hostname'] = self._escape(svc.hostname)
        if svc.environment:
            out['environment'] = {k: self._escape(v) for k, v in svc.environment.items()}
        if svc.ports:
            out['ports'] = [self._port(p) for p in svc.ports]
        if svc.volumes:
            out['volumes'] = [
                {
                    'type': m.type.value,
                    'source': self._escape(m.source),
                    'target': self._escape(m.target),
                    'read_only': m.read_only,
                }
                for m in svc.volumes
            ]
        if svc.networks and svc.networks != [DEFAULT_NETWORK]:
            out['networks'] = list(svc.networks)
        if svc.depends_on:
            out['depends_on'] = {
                dep: {'condition': cond.value} for dep, cond in svc.depends_on.items()
            } if any(c != DependencyCondition.STARTED for c in svc.depends_on.values()) \
                else list(svc.depends_on)
        out.update(self._restart(svc.restart_policy))
        if svc.health_check:
            hc = svc.health_check
            out['healthcheck'] = {
                'test': [self._escape(t) for t in hc.test],
                'interval': format_duration(hc.interval),
                'timeout': format_duration(hc.timeout),
                'retries': hc.retries,
                'start_period': format_duration(hc.start_period),
            }
        if svc.labels:
            out['labels'] = {k: self._escape(v) for k, v in svc.labels.items()}
        return out

    @staticmethod
    def _port(p) -> Dict[str, Any]:
        port: Dict[str, Any] = {'target': p.container, 'protocol': p.protocol}
        if p.host is not None:
            port['published'] = p.host
        if p.host_ip:
            port['host_ip'] = p.host_ip
        return port

    @staticmethod
    def _restart(policy: RestartPolicy) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        default = RestartPolicy()
        if policy.condition == RestartPolicyCondition.ON_FAILURE:
            out['restart'] = f"on-failure:{policy.max_retries}"
        elif policy.condition != RestartPolicyCondition.NO:
            out['restart'] = policy.condition.value
        extra: Dict[str, Any] = {}
        if policy.condition != RestartPolicyCondition.ON_FAILURE \
                and policy.max_retries != default.max_retries:
            extra['max_retries'] = policy.max_retries
        if policy.delay != default.delay:
            extra['delay'] = format_duration(policy.delay)
        if policy.max_delay != default.max_delay:
            extra['max_delay'] = format_duration(policy.max_delay)
        if policy.backoff != default.backoff:
            extra['backoff'] = policy.backoff.value
        if extra:
            out['x-restart'] = extra
        return out
