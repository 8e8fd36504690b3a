import os

import pytest

from drscreen.chromium import ENV_OVERRIDE, LAUNCH_ARGS, ExecutableLocator
from drscreen.errors import ExecutableNotFound


def make_exe(path, executable=True):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\n")
    os.chmod(path, 0o755 if executable else 0o644)
    return str(path)


def test_env_override_probed_first(tmp_path):
    override = make_exe(tmp_path / "custom" / "chrome")
    system = make_exe(tmp_path / "usr" / "chromium")
    locator = ExecutableLocator(candidates=[system], patterns=[], env={ENV_OVERRIDE: override})
    assert locator.probe_order()[0] == override
    assert locator.locate() == override


def test_glob_matches_before_fixed_candidates(tmp_path):
    nix = make_exe(tmp_path / "nix" / "store" / "abc-chromium-120" / "bin" / "chromium")
    system = make_exe(tmp_path / "usr" / "chromium")
    pattern = str(tmp_path / "nix" / "store" / "*-chromium-*" / "bin" / "chromium")
    locator = ExecutableLocator(candidates=[system], patterns=[pattern], env={})
    assert locator.locate() == nix


def test_skips_non_executable(tmp_path):
    plain = make_exe(tmp_path / "a" / "chromium", executable=False)
    real = make_exe(tmp_path / "b" / "chromium")
    locator = ExecutableLocator(candidates=[plain, real], patterns=[], env={})
    assert locator.locate() == real


def test_not_found_lists_every_probe(tmp_path):
    missing = [str(tmp_path / "x"), str(tmp_path / "y"), str(tmp_path / "x")]
    locator = ExecutableLocator(candidates=missing, patterns=[], env={})
    with pytest.raises(ExecutableNotFound) as exc:
        locator.locate()
    assert exc.value.tried == [str(tmp_path / "x"), str(tmp_path / "y")]
    assert str(tmp_path / "y") in str(exc.value)


def test_launch_args_disable_sandbox():
    assert "--no-sandbox" in LAUNCH_ARGS
    assert "--disable-setuid-sandbox" in LAUNCH_ARGS
    assert len(LAUNCH_ARGS) == len(set(LAUNCH_ARGS))
