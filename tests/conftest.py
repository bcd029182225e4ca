from __future__ import annotations

import json
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Any

import pytest


REPO_ROOT = Path(__file__).resolve().parents[1]
COACH_MODULE = "ctdd_coach.coach"


def run_cmd(args: list[str], cwd: Path, expect_code: int = 0) -> subprocess.CompletedProcess[str]:
    proc = subprocess.run(args, cwd=str(cwd), text=True, capture_output=True, check=False)
    if proc.returncode != expect_code:
        raise AssertionError(
            f"command failed\ncwd={cwd}\nargs={args}\n"
            f"expected={expect_code} got={proc.returncode}\n"
            f"stdout:\n{proc.stdout}\n\nstderr:\n{proc.stderr}"
        )
    return proc


def run_coach(project_dir: Path, *coach_args: str, expect_code: int = 0) -> subprocess.CompletedProcess[str]:
    args = [sys.executable, "-m", COACH_MODULE, *coach_args, "--project-dir", str(project_dir)]
    return run_cmd(args, cwd=REPO_ROOT, expect_code=expect_code)


def bootstrap_initialized_project(project_dir: Path) -> None:
    project_dir.mkdir(parents=True, exist_ok=True)
    run_coach(project_dir, "init")


def write_check(project_dir: Path, name: str, payload: Any) -> Path:
    path = project_dir / ".ctdd" / "plugins" / name
    path.parent.mkdir(parents=True, exist_ok=True)
    text = payload if isinstance(payload, str) else json.dumps(payload, indent=2)
    path.write_text(text, encoding="utf-8")
    return path


def write_file(project_dir: Path, rel: str, content: str) -> Path:
    path = project_dir / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


@pytest.fixture(scope="session")
def initialized_project_template(tmp_path_factory: pytest.TempPathFactory) -> Path:
    template_root = tmp_path_factory.mktemp("initialized_project_template")
    project_dir = template_root / "proj"
    bootstrap_initialized_project(project_dir)
    return project_dir


@pytest.fixture()
def initialized_project(tmp_path: Path, initialized_project_template: Path) -> Path:
    project_dir = tmp_path / "proj"
    shutil.copytree(initialized_project_template, project_dir)
    return project_dir


@pytest.fixture()
def project(tmp_path: Path) -> Path:
    from ctdd_coach.project_spec import init_project

    project_dir = tmp_path / "unit_proj"
    project_dir.mkdir()
    init_project(project_dir)
    return project_dir


def load_json(path: Path) -> dict:
    return json.loads(path.read_text(encoding="utf-8"))
