"""
Shared fixtures: an isolated data directory and a scriptable fake nuclei binary.
"""

import json
import os
import stat
import sys
import tempfile
from pathlib import Path

# pocscan.config resolves its home directory at import time
os.environ.setdefault("POCSCAN_HOME", tempfile.mkdtemp(prefix="pocscan-test-home-"))

import pytest
import pytest_asyncio

from pocscan.config import EngineConfig
from pocscan.tasks import TaskManager


FAKE_NUCLEI = '''#!{python}
import json
import os
import sys
import time

CONFIG = json.loads({config!r})

argv = sys.argv[1:]
template_dirs = {{}}
for i, arg in enumerate(argv):
    if arg == "-t" and i + 1 < len(argv) and os.path.isdir(argv[i + 1]):
        count = 0
        for _, _, files in os.walk(argv[i + 1]):
            count += len([f for f in files if f.endswith((".yaml", ".yml"))])
        template_dirs[argv[i + 1]] = count
with open(CONFIG["args_file"], "w") as f:
    json.dump({{"argv": argv, "template_dirs": template_dirs}}, f)

if CONFIG["findings"] is not None and "-jle" in argv:
    with open(argv[argv.index("-jle") + 1], "w") as f:
        for record in CONFIG["findings"]:
            f.write(json.dumps(record) + "\\n")

for line in CONFIG["stderr"]:
    print(line, file=sys.stderr, flush=True)
for line in CONFIG["stdout"]:
    print(line, flush=True)

time.sleep(CONFIG["sleep"])
sys.exit(CONFIG["exit_code"])
'''


@pytest.fixture
def fake_nuclei(tmp_path):
    """Factory writing an executable that behaves like a scripted nuclei run.

    The invocation (argv plus a YAML count for every -t directory) is
    recorded in tmp_path/nuclei_args.json.
    """
    def make(stdout=None, stderr=None, findings=None, exit_code=0, sleep=0.0) -> str:
        config = {
            "args_file": str(tmp_path / "nuclei_args.json"),
            "stdout": list(stdout or []),
            "stderr": list(stderr or []),
            "findings": findings,
            "exit_code": exit_code,
            "sleep": sleep,
        }
        script = tmp_path / "fake-nuclei"
        script.write_text(FAKE_NUCLEI.format(python=sys.executable, config=json.dumps(config)))
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(script)

    return make


@pytest.fixture
def recorded_args(tmp_path):
    def read() -> dict:
        return json.loads((tmp_path / "nuclei_args.json").read_text())
    return read


@pytest.fixture
def engine_config(tmp_path) -> EngineConfig:
    templates_dir = tmp_path / "templates"
    templates_dir.mkdir()
    return EngineConfig(
        data_dir=tmp_path / "data",
        templates_dir=templates_dir,
        nuclei_path=str(tmp_path / "fake-nuclei"),
        scan_timeout_s=30.0,
        persist_interval_s=0.0,
        handler_timeout_s=1.0,
    )


@pytest.fixture
def make_templates(engine_config):
    """Create n template files under templates_dir/http and return their relative paths."""
    def make(n: int, prefix: str = "tpl") -> list:
        http_dir = Path(engine_config.templates_dir) / "http"
        http_dir.mkdir(parents=True, exist_ok=True)
        paths = []
        for i in range(n):
            name = f"{prefix}-{i:03d}.yaml"
            (http_dir / name).write_text(f"id: {prefix}-{i:03d}\ninfo:\n  name: test\n  severity: info\n")
            paths.append(f"http/{name}")
        return paths

    return make


@pytest_asyncio.fixture
async def manager(engine_config):
    mgr = TaskManager(engine_config)
    yield mgr
    await mgr.cancel_all()
