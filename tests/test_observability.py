import io
import json
from pathlib import Path

from sbfbuild.observability import StructuredLogger


def test_records_keep_stage_crate_and_toolchain() -> None:
    logger = StructuredLogger()
    logger.log(operation="fetch", stage="fetch", message="downloading", toolchain="v1.43")
    logger.log(operation="cargo-build", stage="build", message="building", crate="alpha")

    assert logger.records_for_stage("fetch")[0]["toolchain"] == "v1.43"
    assert logger.records_for_crate("alpha")[0]["stage"] == "build"
    assert logger.records_for_crate("beta") == []


def test_echo_formats_and_filters_levels() -> None:
    stream = io.StringIO()
    logger = StructuredLogger(echo=stream)
    logger.log(operation="fetch", stage="fetch", message="downloading")
    logger.log(operation="fetch", stage="fetch", message="lock wait", level="debug")
    logger.log(
        operation="cargo-build", stage="build", message="failed", crate="beta", level="error"
    )

    assert stream.getvalue().splitlines() == [
        "[fetch] downloading",
        "[build] error: beta: failed",
    ]
    assert len(logger.records) == 3


def test_quiet_keeps_warnings_and_verbose_shows_debug() -> None:
    quiet_stream = io.StringIO()
    quiet = StructuredLogger(echo=quiet_stream, quiet=True)
    quiet.log(operation="x", stage="cache", message="installed")
    quiet.log(operation="x", stage="cache", message="in use", level="warning")
    verbose_stream = io.StringIO()
    verbose = StructuredLogger(echo=verbose_stream, verbose=True)
    verbose.log(operation="x", stage="toolchain", message="waiting", level="debug")

    assert quiet_stream.getvalue() == "[cache] warning: in use\n"
    assert verbose_stream.getvalue() == "[toolchain] waiting\n"


def test_output_lines_are_streamed_not_recorded() -> None:
    stream = io.StringIO()
    logger = StructuredLogger(echo=stream)

    logger.output(crate="alpha", line="   Compiling alpha")
    logger.output(crate="beta", line="   Compiling beta", prefix=True)

    assert stream.getvalue() == "   Compiling alpha\nbeta |    Compiling beta\n"
    assert logger.records == []


def test_json_lines_export(tmp_path: Path) -> None:
    logger = StructuredLogger()
    logger.log(operation="resolve", stage="toolchain", message="selected v1.48", extra={"n": 1})

    path = logger.to_json_lines(tmp_path / "logs" / "build.jsonl")

    lines = path.read_text(encoding="utf-8").splitlines()
    assert json.loads(lines[0])["extra"] == {"n": 1}
