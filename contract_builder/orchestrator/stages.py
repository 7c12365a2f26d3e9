"""Stage pipeline definitions.

Each stage is a POSIX shell script executed with the session volume as its
working directory. Stages communicate only through files on the volume and
report failures through their exit status, which is mapped to a
:class:`FailureReason` here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import shlex
from typing import Mapping, Sequence

from contract_builder.config import BuilderConfig
from contract_builder.errors import FailureReason
from contract_builder.models.sandbox import ExitOutcome
from contract_builder.models.session import BuildRequest, SessionStatus

# Canonical artifact locations, relative to the volume root.
WASM_PATH = "target/ink/main.wasm"
METADATA_PATH = "target/ink/main.json"

# Location of cargo-contract builds baked into the build image.
PREBAKED_TOOL_ROOT = "/opt/cargo-contract"

_PRELUDE = """\
set -eu
ROOT="$(pwd)"
export CARGO_HOME="$ROOT/.cargo" RUSTUP_HOME="$ROOT/.rustup"
export PATH="$CARGO_HOME/bin:$PATH"
"""


@dataclass(frozen=True)
class Stage:
    name: str
    status: SessionStatus
    image_key: str
    script: str
    failure_reason: FailureReason
    exit_reasons: Mapping[int, FailureReason] = field(default_factory=dict)
    env: tuple[str, ...] = ()

    def command(self) -> list[str]:
        return ["/bin/sh", "-c", self.script]

    def image(self, config: BuilderConfig) -> str:
        return getattr(config.images, self.image_key)

    def classify(self, outcome: ExitOutcome) -> FailureReason | None:
        """Map a finished sandbox to a failure reason, or ``None`` on success."""
        if outcome.oom_killed:
            return FailureReason.RESOURCE_EXCEEDED
        if outcome.exit_code == 0:
            return None
        return self.exit_reasons.get(outcome.exit_code, self.failure_reason)


def unarchive_stage() -> Stage:
    script = _PRELUDE + """\
curl --fail --silent --show-error --location \\
    --output "$ROOT/.source.zip" "$SOURCE_CODE_URL" || exit 10
mkdir -p "$ROOT/source"
unzip -q -o "$ROOT/.source.zip" -d "$ROOT/source" || exit 11
rm -f "$ROOT/.source.zip"
"""
    return Stage(
        name="unarchive",
        status=SessionStatus.UNARCHIVING,
        image_key="unarchive",
        script=script,
        failure_reason=FailureReason.UNPACK_FAILURE,
        exit_reasons={
            10: FailureReason.DOWNLOAD_FAILURE,
            11: FailureReason.UNPACK_FAILURE,
        },
        env=("SOURCE_CODE_URL",),
    )


def relay_stage(patterns: Sequence[str]) -> Stage:
    """Upload matching sources one file per call, then seal the upload window."""
    if not patterns:
        raise ValueError("relay stage needs at least one file pattern")
    match = " -o ".join(f"-name {shlex.quote(pattern)}" for pattern in patterns)
    script = _PRELUDE + f"""\
cd "$ROOT/source"
find . -path ./target -prune -o -type f \\( {match} \\) -print > "$ROOT/.relay-files"
while IFS= read -r file; do
    case "$file" in
        *[\\;,\\"\\\\]*)
            echo "skipping $file: unsupported character in file name" >&2
            continue
            ;;
    esac
    curl --fail --silent --show-error -X POST \\
        --form-string "name=${{file#./}}" -F "file=@$file" \\
        "$API_SERVER_URL/files/upload/$BUILD_SESSION_TOKEN" || exit 20
done < "$ROOT/.relay-files"
rm -f "$ROOT/.relay-files"
curl --fail --silent --show-error -X POST \\
    "$API_SERVER_URL/files/seal/$BUILD_SESSION_TOKEN" || exit 21
"""
    return Stage(
        name="relay",
        status=SessionStatus.SEALING,
        image_key="unarchive",
        script=script,
        failure_reason=FailureReason.UPLOAD_FAILURE,
        exit_reasons={
            20: FailureReason.UPLOAD_FAILURE,
            21: FailureReason.SEAL_FAILURE,
        },
        env=("BUILD_SESSION_TOKEN", "API_SERVER_URL"),
    )


def toolchain_stage(rustc_version: str, tool_version: str, prebaked: Sequence[str]) -> Stage:
    rustc = shlex.quote(rustc_version)
    tool = shlex.quote(tool_version)
    if tool_version in prebaked:
        source = shlex.quote(f"{PREBAKED_TOOL_ROOT}/{tool_version}/bin/cargo-contract")
        install_tool = f'ln -sf {source} "$CARGO_HOME/bin/cargo-contract" || exit 41'
    else:
        install_tool = (
            f"cargo +{rustc} install cargo-contract --locked --version {tool} "
            f'--root "$CARGO_HOME" || exit 41'
        )
    script = _PRELUDE + f"""\
rustup toolchain install {rustc} --profile minimal --component rust-src || exit 40
rustup target add wasm32-unknown-unknown --toolchain {rustc} || exit 40
mkdir -p "$CARGO_HOME/bin"
{install_tool}
"""
    return Stage(
        name="toolchain",
        status=SessionStatus.INSTALLING_TOOLCHAIN,
        image_key="build",
        script=script,
        failure_reason=FailureReason.TOOLCHAIN_INSTALL_FAILURE,
    )


def compile_stage(rustc_version: str, project_directory: str = "") -> Stage:
    project = '"$ROOT/source"'
    if project_directory:
        project = f'"$ROOT/source"/{shlex.quote(project_directory)}'
    script = _PRELUDE + f"""\
export RUSTUP_TOOLCHAIN={shlex.quote(rustc_version)}
export CARGO_TARGET_DIR="$ROOT/target"
cd {project}
cargo contract build --release
"""
    return Stage(
        name="compile",
        status=SessionStatus.BUILDING,
        image_key="build",
        script=script,
        failure_reason=FailureReason.COMPILE_FAILURE,
    )


def normalize_stage() -> Stage:
    """Rename the single binary and metadata file to their canonical names."""
    script = _PRELUDE + """\
cd "$ROOT/target/ink" || exit 30
for ext in wasm json; do
    set -- *."$ext"
    [ -f "$1" ] || exit 30
    [ "$#" -eq 1 ] || exit 31
    if [ "$1" != "main.$ext" ]; then
        mv -f "$1" "main.$ext"
    fi
done
"""
    return Stage(
        name="normalize",
        status=SessionStatus.NORMALIZING_OUTPUT,
        image_key="move",
        script=script,
        failure_reason=FailureReason.ARTIFACT_MISSING,
        exit_reasons={
            30: FailureReason.ARTIFACT_MISSING,
            31: FailureReason.ARTIFACT_MISSING,
        },
    )


def build_pipeline(config: BuilderConfig, request: BuildRequest) -> list[Stage]:
    stages = [unarchive_stage()]
    if config.relay_sources:
        stages.append(relay_stage(config.relay_patterns))
    stages.extend(
        [
            toolchain_stage(
                request.rustc_version,
                request.tool_version,
                config.prebaked_tool_versions,
            ),
            compile_stage(request.rustc_version, request.project_directory),
            normalize_stage(),
        ]
    )
    validate_pipeline(stages)
    return stages


def validate_pipeline(stages: Sequence[Stage]) -> None:
    """Reject pipelines that would move a session backwards or skip output normalization."""
    if not stages:
        raise ValueError("pipeline has no stages")
    order = list(SessionStatus)
    previous = order.index(SessionStatus.PROVISIONING)
    names = set()
    for stage in stages:
        if stage.name in names:
            raise ValueError(f"duplicate stage name: {stage.name}")
        names.add(stage.name)
        position = order.index(stage.status)
        if position <= previous or stage.status.is_terminal:
            raise ValueError(f"stage {stage.name} enters {stage.status.value} out of order")
        previous = position
    if stages[0].status is not SessionStatus.UNARCHIVING:
        raise ValueError("pipeline must start by unarchiving the source")
    if stages[-1].status is not SessionStatus.NORMALIZING_OUTPUT:
        raise ValueError("pipeline must end by normalizing output")
