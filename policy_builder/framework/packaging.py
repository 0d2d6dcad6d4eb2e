from __future__ import annotations

import logging
import os
import shutil
import stat
import subprocess

from policy_builder.framework.config import PackagingConfig
from policy_builder.framework.errors import PackagingError

IMAGE_ARTIFACT_NAME = "policy-engine.pyz"

DOCKERFILE_TEMPLATE = """\
FROM {base_image}

# Create non-root user
RUN addgroup -g 1000 appuser && \\
    adduser -D -u 1000 -G appuser appuser

WORKDIR /app

COPY {artifact} /app/{artifact}
RUN chmod 0755 /app/{artifact}

USER appuser

ENTRYPOINT ["python3", "/app/{artifact}"]
"""


def docker_available(socket_path: str) -> bool:
    """Return True when a Unix socket exists at `socket_path`."""

    try:
        mode = os.stat(socket_path).st_mode
    except OSError:
        return False
    return stat.S_ISSOCK(mode)


def render_dockerfile(base_image: str, artifact: str = IMAGE_ARTIFACT_NAME) -> str:
    return DOCKERFILE_TEMPLATE.format(base_image=base_image, artifact=artifact)


def build_image(
    artifact_path: str,
    *,
    cfg: PackagingConfig,
    context_dir: str,
    logger: logging.Logger | None = None,
) -> str:
    """Build the runtime image around `artifact_path` and return its reference."""

    log = logger or logging.getLogger(__name__)

    try:
        if os.path.isdir(context_dir):
            shutil.rmtree(context_dir)
        os.makedirs(context_dir)
        shutil.copyfile(artifact_path, os.path.join(context_dir, IMAGE_ARTIFACT_NAME))
        with open(os.path.join(context_dir, "Dockerfile"), "w", encoding="utf-8", newline="\n") as handle:
            handle.write(render_dockerfile(cfg.base_image))
    except OSError as exc:
        raise PackagingError(f"Failed to prepare image build context: {exc}") from exc

    image_ref = cfg.image_ref
    cmd = [*cfg.docker_command, "build", "-t", image_ref, context_dir]
    log.info("Building final image %s", image_ref)
    log.debug("Running %s", " ".join(cmd))
    env = dict(os.environ)
    env["DOCKER_HOST"] = f"unix://{cfg.socket_path}"
    try:
        proc = subprocess.run(cmd, check=False, capture_output=True, text=True, env=env)
    except OSError as exc:
        raise PackagingError(f"Cannot run {cfg.docker_command[0]}: {exc}") from exc

    if proc.returncode != 0:
        diagnostic = "\n".join(part for part in (proc.stdout, proc.stderr) if part and part.strip())
        raise PackagingError(
            f"docker build failed (exit={proc.returncode})",
            diagnostic=diagnostic or f"docker build exited with status {proc.returncode}",
        )

    shutil.rmtree(context_dir, ignore_errors=True)
    return image_ref
