"""Static stage sequences for the build and generation phases.

The order of ``GENERATION_STEPS`` is significant: verifier generation reads
the compiled contracts, and genesis patching reads the generated verifiers.
"""

from __future__ import annotations

from typing import Any, Mapping

from .config import to_bool
from .executor import format_template
from .models import Stage, TriggerEvent

CONTAINER_RUN_TEMPLATE = (
    "docker compose run --use-aliases --no-TTY --rm --entrypoint bash {service_q} -c {script_q}"
)

BUILD_STEPS: list[tuple[str, str]] = [
    ("checkout", "git clone {url_q} . && git checkout {head_ref_q}"),
    ("setup-env", "cp {env_template_q} {env_file_q}"),
    (
        "build-image",
        "docker compose down -v --remove-orphans || true; docker compose build {service_q}",
    ),
]

GENERATION_STEPS: list[tuple[str, str]] = [
    ("compile-contracts", "./scripts/compile_contracts.sh"),
    ("circuit-config", "./scripts/autogen.sh autogen_circuit_config"),
    ("cargo-fmt", "cargo fmt --all"),
    ("verifier", "./scripts/autogen.sh autogen_verifier_pi autogen_verifier_dummy"),
    ("super-circuit-verifier", "./scripts/autogen.sh autogen_verifier_super"),
]

GENESIS_TEMPLATE = "docker run --rm -v {workspace_q}:/host -w /host {image_q} {script_q}"


def container_command(service: str, script: str) -> str:
    return format_template(CONTAINER_RUN_TEMPLATE, {"service": service, "script": script})


def build_stages(config: Mapping[str, Any], event: TriggerEvent, *, project: str) -> list[Stage]:
    build_cfg = config["build"]
    values = {
        "url": str(config["repository"].get("url") or ""),
        "head_ref": event.head_ref or event.ref,
        "env_template": str(build_cfg.get("env_template") or ".env.example"),
        "env_file": str(build_cfg.get("env_file") or ".env"),
        "service": str(build_cfg.get("compose_service") or "dev"),
    }
    env = {"COMPOSE_PROJECT_NAME": project}
    return [
        Stage(name=name, command=format_template(template, values), runtime="host", env=env)
        for name, template in BUILD_STEPS
    ]


def generation_stages(config: Mapping[str, Any], *, project: str, workspace: str) -> list[Stage]:
    service = str(config["build"].get("compose_service") or "dev")
    gen_cfg = config["generation"]
    env = {"COMPOSE_PROJECT_NAME": project}

    stages: list[Stage] = []
    for name, script in GENERATION_STEPS:
        if name == "super-circuit-verifier" and to_bool(gen_cfg.get("only_evm"), True):
            script = f"ONLY_EVM=1 {script}"
        stages.append(Stage(name=name, command=container_command(service, script), env=env))

    genesis = format_template(
        GENESIS_TEMPLATE,
        {
            "workspace": workspace,
            "image": str(gen_cfg.get("genesis_image") or "node:lts-alpine"),
            "script": str(gen_cfg.get("genesis_script") or "scripts/patch_genesis.mjs"),
        },
    )
    stages.append(Stage(name="patch-genesis", command=genesis, runtime="host", env=env))
    return stages
