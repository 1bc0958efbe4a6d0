import os
import textwrap

import pytest

from stackup.BUILDERS.image_builder import ImageBuilder
from stackup.errors import BuildFailedError, ImageUnresolvedError
from stackup.MODELS.container_image import ContainerImage
from stackup.MODELS.service_definition import BuildSource
from stackup.PARSERS.dockerfile_parser import DockerfileParser
from stackup.REGISTRY.image_resolver import ImageResolver
from stackup.REGISTRY.image_store import ImageStore
from stackup.REGISTRY.registry_client import ImageNotFound


@pytest.fixture
def store(tmp_path):
    return ImageStore(str(tmp_path / "images"))


def write_context(path, dockerfile, files=None):
    path.mkdir(parents=True, exist_ok=True)
    (path / "Dockerfile").write_text(textwrap.dedent(dockerfile))
    for name, content in (files or {}).items():
        (path / name).write_text(content)
    return str(path)


def test_parser_handles_continuations_and_forms():
    instructions = DockerfileParser().parse_from_string(textwrap.dedent("""
        # comment
        FROM python:3.12 AS base
        ENV A=1 B="two words"
        ENV LEGACY some value
        RUN apt-get update && \\
            apt-get install -y curl
        CMD ["python", "app.py"]
    """))
    assert [i.instruction for i in instructions] == ["FROM", "ENV", "ENV", "RUN", "CMD"]
    assert instructions[0].arguments == ["python:3.12", "AS", "base"]
    assert instructions[1].arguments == ["A=1", "B=two words"]
    assert instructions[2].arguments == ["LEGACY=some value"]
    assert instructions[3].arguments == ["apt-get update && apt-get install -y curl"]
    assert instructions[3].line == 6
    assert instructions[4].exec_form


def test_build_from_scratch(tmp_path, store):
    context = write_context(tmp_path / "ctx", """
        FROM scratch
        ARG VERSION=1.0
        WORKDIR /app
        COPY app.py .
        ENV GREETING=hello APP_VERSION=${VERSION}
        RUN echo "$GREETING" > greeting.txt
        EXPOSE 8000/tcp
        CMD ["python3", "app.py"]
    """, {"app.py": "print('hi')\n"})

    image = ImageBuilder(store).build("web", BuildSource(context=context), context,
                                      "stackup/web:latest")

    assert image.source == "build"
    assert image.working_dir == "/app"
    assert image.env == {"GREETING": "hello", "APP_VERSION": "1.0"}
    assert image.cmd == ["python3", "app.py"]
    assert image.exposed_ports == [8000]
    assert open(os.path.join(image.rootfs, "app", "app.py")).read() == "print('hi')\n"
    assert open(os.path.join(image.rootfs, "app", "greeting.txt")).read().strip() == "hello"
    assert store.get("stackup/web:latest").image_id == image.image_id


def test_build_args_override_defaults(tmp_path, store):
    context = write_context(tmp_path / "ctx", """
        ARG TAG=dev
        FROM scratch
        ARG TAG
        LABEL tag=${TAG}
    """)
    build = BuildSource(context=context, args={"TAG": "prod"})
    image = ImageBuilder(store).build("web", build, context, "stackup/web:latest")
    assert image.labels["tag"] == "prod"


def test_run_failure_reports_line(tmp_path, store):
    context = write_context(tmp_path / "ctx", """
        FROM scratch
        RUN echo broken >&2; exit 3
    """)
    with pytest.raises(BuildFailedError) as exc:
        ImageBuilder(store).build("web", BuildSource(context=context), context, "stackup/web:latest")
    message = str(exc.value)
    assert "build failed" in message
    assert "line 3" in message
    assert "broken" in message
    assert store.get("stackup/web:latest") is None


def test_copy_outside_context_is_rejected(tmp_path, store):
    (tmp_path / "secret.txt").write_text("no")
    context = write_context(tmp_path / "ctx", """
        FROM scratch
        COPY ../secret.txt /secret.txt
    """)
    with pytest.raises(BuildFailedError):
        ImageBuilder(store).build("web", BuildSource(context=context), context, "stackup/web:latest")


def test_multi_stage_copy_from(tmp_path, store):
    context = write_context(tmp_path / "ctx", """
        FROM scratch AS build
        WORKDIR /out
        RUN echo artifact > result.bin
        FROM scratch
        COPY --from=build /out/result.bin /app/result.bin
    """)
    image = ImageBuilder(store).build("web", BuildSource(context=context), context, "stackup/web:latest")
    assert open(os.path.join(image.rootfs, "app", "result.bin")).read().strip() == "artifact"


def test_base_image_from_store(tmp_path, store):
    base_root = tmp_path / "base-rootfs"
    (base_root / "opt").mkdir(parents=True)
    (base_root / "opt" / "tool").write_text("tool\n")
    store.add(ContainerImage(reference="local/base:1", image_id="local:base1",
                             rootfs=str(base_root), env={"PATH": "/opt"}, working_dir="/opt"))
    context = write_context(tmp_path / "ctx", """
        FROM local/base:1
        COPY Dockerfile recipe
    """)
    resolver = ImageResolver(store, client=object())
    image = ImageBuilder(store, resolver).build("web", BuildSource(context=context), context,
                                                "stackup/web:latest")
    assert os.path.exists(os.path.join(image.rootfs, "opt", "tool"))
    assert os.path.exists(os.path.join(image.rootfs, "opt", "recipe"))
    assert image.env["PATH"] == "/opt"


def test_unresolvable_base_fails_build(tmp_path, store):
    class MissingRegistry:
        def pull_image(self, ref, rootfs, timeout=None):
            raise ImageNotFound(f"{ref.full_name} not found")

    context = write_context(tmp_path / "ctx", "FROM ghost/base:1\n")
    resolver = ImageResolver(store, client=MissingRegistry())
    with pytest.raises(BuildFailedError) as exc:
        ImageBuilder(store, resolver).build("web", BuildSource(context=context), context,
                                            "stackup/web:latest")
    assert "base image" in str(exc.value)
    with pytest.raises(ImageUnresolvedError):
        resolver.resolve("web", "ghost/base:1")
