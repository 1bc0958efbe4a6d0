"""
Builders that execute a build recipe against a context and tag the result
into the local image store.
"""
import glob
import hashlib
import logging
import os
import shutil
import subprocess
import time
import uuid
from typing import Dict, List, Optional

from ..errors import BuildFailedError, StackupError
from ..MODELS.container_image import ContainerImage
from ..MODELS.dockerfile_ast import Instruction
from ..MODELS.service_definition import BuildSource
from ..PARSERS.dockerfile_parser import DockerfileParser
from ..REGISTRY.image_resolver import ImageResolver
from ..REGISTRY.image_store import ImageStore
from ..UTILS.string_interpolation import EnvironmentInterpolator

logger = logging.getLogger(__name__)


class _BuildVariables(dict):
    """Recipe variables: unset names expand to an empty string."""

    def get(self, key, default=None):
        return super().get(key, "")


class _BuildState:
    def __init__(self, rootfs: str):
        self.rootfs = rootfs
        self.workdir = "/"
        self.env: Dict[str, str] = {}
        self.args: Dict[str, str] = {}
        self.cmd: List[str] = []
        self.entrypoint: List[str] = []
        self.exposed: List[int] = []
        self.volumes: List[str] = []
        self.labels: Dict[str, str] = {}
        self.user: Optional[str] = None
        self.global_args: Dict[str, str] = {}


class ImageBuilder:
    """
    Executes Dockerfile-style recipes natively.

    The image root filesystem starts as a copy of the base image (or empty
    for ``scratch``); COPY/ADD/WORKDIR/VOLUME act on it and RUN commands are
    executed on the host with the image directory as working directory.
    """
    def __init__(self, store: ImageStore, resolver: Optional[ImageResolver] = None):
        """
        Initializes the ImageBuilder.

        :param store: Store the built image is tagged into.
        :param resolver: Resolves base images named by FROM.
        """
        self.store = store
        self.resolver = resolver
        self.parser = DockerfileParser()

    def build(self, service: str, build: BuildSource, context: str, tag: str,
              timeout: float = 600.0) -> ContainerImage:
        """
        Builds the image for ``service`` and tags it as ``tag``.

        :param service: Service name, for error reporting.
        :param build: Declared build source.
        :param context: Absolute path of the build context.
        :param tag: Reference the result is stored under.
        :param timeout: Overall time allowed for the build, in seconds.
        :return: The stored image.
        :raises BuildFailedError: If any step of the recipe fails.
        """
        deadline = time.monotonic() + timeout
        recipe = os.path.join(context, build.dockerfile)
        try:
            instructions = self.parser.parse(recipe)
        except (OSError, ValueError) as e:
            raise BuildFailedError(f"cannot read recipe {recipe}: {e}", service) from e
        if not instructions or instructions[0].instruction not in ("FROM", "ARG"):
            raise BuildFailedError(f"{recipe}: recipe must start with FROM", service)

        image_id = f"build:{uuid.uuid4().hex[:16]}"
        image_dir = self.store.image_dir(image_id)
        stages: Dict[str, str] = {}
        state: Optional[_BuildState] = None
        global_args = dict(build.args)
        logger.info("[%s] Building %s from %s", service, tag, recipe)

        try:
            for index, inst in enumerate(instructions):
                if time.monotonic() > deadline:
                    raise BuildFailedError(
                        f"build exceeded {timeout:.0f}s at line {inst.line}", service)
                if inst.instruction == "FROM":
                    stage_root = os.path.join(image_dir, f"stage{index}")
                    state = self._start_stage(service, inst, stage_root, global_args)
                    name = self._stage_name(inst)
                    stages[name or str(len(stages))] = state.rootfs
                    continue
                if state is None:
                    if inst.instruction == "ARG":
                        for key, value in self._pairs(inst, _BuildVariables(global_args)).items():
                            global_args[key] = build.args.get(key, value)
                        continue
                    raise BuildFailedError(f"line {inst.line}: {inst.instruction} before FROM",
                                           service)
                self._apply(service, inst, state, context, stages, build.args, deadline)
        except StackupError:
            shutil.rmtree(image_dir, ignore_errors=True)
            raise
        except (OSError, ValueError) as e:
            shutil.rmtree(image_dir, ignore_errors=True)
            raise BuildFailedError(str(e), service) from e

        final_rootfs = os.path.join(image_dir, "rootfs")
        os.replace(state.rootfs, final_rootfs)
        for leftover in os.listdir(image_dir):
            if leftover != "rootfs":
                shutil.rmtree(os.path.join(image_dir, leftover), ignore_errors=True)

        image = ContainerImage(
            reference=tag,
            image_id=image_id,
            rootfs=final_rootfs,
            source="build",
            env=state.env,
            cmd=state.cmd,
            entrypoint=state.entrypoint,
            working_dir=state.workdir,
            exposed_ports=state.exposed,
            volumes=state.volumes,
            user=state.user,
            labels={**state.labels, "stackup.recipe.sha256": self._digest(recipe)},
        )
        logger.info("[%s] Built %s (%s)", service, tag, image_id)
        return self.store.add(image)

    @staticmethod
    def _digest(path: str) -> str:
        with open(path, "rb") as f:
            return hashlib.sha256(f.read()).hexdigest()

    @staticmethod
    def _stage_name(inst: Instruction) -> Optional[str]:
        args = inst.arguments
        if len(args) == 3 and args[1].upper() == "AS":
            return args[2]
        return None

    def _start_stage(self, service: str, inst: Instruction, stage_root: str,
                     global_args: Dict[str, str]) -> _BuildState:
        if not inst.arguments:
            raise BuildFailedError(f"line {inst.line}: FROM needs an image", service)
        variables = _BuildVariables(global_args)
        base = EnvironmentInterpolator.interpolate(inst.arguments[0], variables, service)
        state = _BuildState(stage_root)
        state.global_args = dict(global_args)

        if base == "scratch":
            os.makedirs(stage_root, exist_ok=True)
            return state

        if self.resolver is None:
            raise BuildFailedError(f"line {inst.line}: no resolver for base image '{base}'",
                                   service)
        try:
            base_image = self.resolver.resolve(service, base)
        except StackupError as e:
            raise BuildFailedError(f"line {inst.line}: base image: {e.message}", service) from e
        shutil.copytree(base_image.rootfs, stage_root, symlinks=True)
        state.env = dict(base_image.env)
        state.cmd = list(base_image.cmd)
        state.entrypoint = list(base_image.entrypoint)
        state.workdir = base_image.working_dir or "/"
        state.exposed = list(base_image.exposed_ports)
        state.volumes = list(base_image.volumes)
        state.user = base_image.user
        return state

    @staticmethod
    def _pairs(inst: Instruction, variables) -> Dict[str, str]:
        pairs = {}
        for arg in inst.arguments:
            key, sep, value = arg.partition("=")
            if inst.instruction == "ARG" and not sep:
                pairs[key] = variables.get(key)
                continue
            pairs[key] = EnvironmentInterpolator.interpolate(value, variables)
        return pairs

    def _path(self, state: _BuildState, path: str) -> str:
        if not path.startswith("/"):
            path = os.path.join(state.workdir, path)
        return os.path.join(state.rootfs, os.path.normpath(path).lstrip("/"))

    def _apply(self, service: str, inst: Instruction, state: _BuildState, context: str,
               stages: Dict[str, str], build_args: Dict[str, str], deadline: float) -> None:
        variables = _BuildVariables({**state.args, **state.env})
        name = inst.instruction

        def expand(value: str) -> str:
            return EnvironmentInterpolator.interpolate(value, variables, service)

        if name == "ARG":
            for key, default in self._pairs(inst, variables).items():
                state.args[key] = build_args.get(key, default or state.global_args.get(key, ""))
        elif name == "ENV":
            state.env.update(self._pairs(inst, variables))
        elif name == "LABEL":
            state.labels.update(self._pairs(inst, variables))
        elif name == "WORKDIR":
            workdir = expand(inst.arguments[0]) if inst.arguments else "/"
            if not workdir.startswith("/"):
                workdir = os.path.join(state.workdir, workdir)
            state.workdir = os.path.normpath(workdir)
            os.makedirs(self._path(state, state.workdir), exist_ok=True)
        elif name in ("COPY", "ADD"):
            self._copy(service, inst, state, context, stages, expand)
        elif name == "RUN":
            self._run(service, inst, state, variables, deadline)
        elif name == "CMD":
            state.cmd = self._command(inst)
        elif name == "ENTRYPOINT":
            state.entrypoint = self._command(inst)
        elif name == "EXPOSE":
            for spec in inst.arguments:
                port = expand(spec).split("/")[0]
                if not port.isdigit():
                    raise BuildFailedError(f"line {inst.line}: invalid port '{spec}'", service)
                state.exposed.append(int(port))
        elif name == "VOLUME":
            for path in inst.arguments:
                path = expand(path)
                os.makedirs(self._path(state, path), exist_ok=True)
                state.volumes.append(path)
        elif name == "USER":
            state.user = expand(inst.arguments[0]) if inst.arguments else None
        elif name in ("HEALTHCHECK", "STOPSIGNAL", "SHELL", "MAINTAINER", "ONBUILD"):
            logger.debug("[%s] Ignoring %s at line %d", service, name, inst.line)
        else:
            raise BuildFailedError(f"line {inst.line}: unknown instruction '{name}'", service)

    @staticmethod
    def _command(inst: Instruction) -> List[str]:
        if inst.exec_form:
            return list(inst.arguments)
        return ["/bin/sh", "-c", inst.arguments[0]] if inst.arguments else []

    def _copy(self, service, inst, state, context, stages, expand) -> None:
        args = [a for a in inst.arguments if not a.startswith("--")]
        flags = dict(a[2:].split("=", 1) for a in inst.arguments
                     if a.startswith("--") and "=" in a)
        if len(args) < 2:
            raise BuildFailedError(f"line {inst.line}: {inst.instruction} needs a source "
                                   f"and a destination", service)
        *sources, dest = [expand(a) for a in args]

        source_root = context
        if "from" in flags:
            if flags["from"] not in stages:
                raise BuildFailedError(f"line {inst.line}: unknown stage '{flags['from']}'",
                                       service)
            source_root = stages[flags["from"]]
        source_root = os.path.realpath(source_root)

        matches: List[str] = []
        for source in sources:
            if source.startswith(("http://", "https://")):
                raise BuildFailedError(f"line {inst.line}: remote sources are not supported",
                                       service)
            pattern = os.path.join(source_root, source.lstrip("/"))
            found = sorted(glob.glob(pattern)) or ([pattern] if os.path.exists(pattern) else [])
            for path in found:
                real = os.path.realpath(path)
                if real != source_root and not real.startswith(source_root + os.sep):
                    raise BuildFailedError(
                        f"line {inst.line}: '{source}' is outside the build context", service)
                matches.append(real)
            if not found:
                raise BuildFailedError(
                    f"line {inst.line}: '{source}' not found in build context", service)

        target = self._path(state, dest)
        to_directory = dest.endswith("/") or len(matches) > 1 or os.path.isdir(target)
        for path in matches:
            if os.path.isdir(path):
                shutil.copytree(path, target, symlinks=True, dirs_exist_ok=True)
            elif to_directory:
                os.makedirs(target, exist_ok=True)
                shutil.copy2(path, os.path.join(target, os.path.basename(path)))
            else:
                os.makedirs(os.path.dirname(target), exist_ok=True)
                shutil.copy2(path, target)

    def _run(self, service, inst, state, variables, deadline) -> None:
        command = self._command(inst)
        if not command:
            return
        workdir = self._path(state, state.workdir)
        os.makedirs(workdir, exist_ok=True)
        env = dict(os.environ)
        env.update(variables)
        env["STACKUP_ROOTFS"] = state.rootfs

        remaining = deadline - time.monotonic()
        logger.info("[%s] RUN %s", service, " ".join(command[2:] if not inst.exec_form
                                                        else command))
        try:
            result = subprocess.run(
                command,
                cwd=workdir,
                env=env,
                capture_output=True,
                text=True,
                timeout=max(remaining, 0.001),
            )
        except subprocess.TimeoutExpired as e:
            raise BuildFailedError(f"line {inst.line}: RUN timed out", service) from e
        except OSError as e:
            raise BuildFailedError(f"line {inst.line}: RUN could not start: {e}", service) from e

        if result.returncode != 0:
            output = (result.stderr or result.stdout or "").strip()[-500:]
            raise BuildFailedError(
                f"line {inst.line}: '{inst.raw}' exited with {result.returncode}"
                + (f": {output}" if output else ""), service)
