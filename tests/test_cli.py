"""
Tests for the mem-ctl command line.
"""

import json
from unittest.mock import patch

import pytest

import mem_ctl
from mem_ctl import ConfigError, LinuxProbe, get_config, main


def _backups(directory):
    return sorted(directory.glob(".env.backup.*"))


class TestPlanCommand:
    def test_json(self, workdir, capsys):
        assert main(["plan", "--total-mb", "990", "--json"]) == 0

        data = json.loads(capsys.readouterr().out)
        assert data["usable_mb"] == 960
        assert data["factor"] == 2.0
        assert data["total_allocated_mb"] == 840

    def test_table(self, workdir, capsys):
        assert main(["plan", "--total-mb", "430"]) == 0

        out = capsys.readouterr().out
        assert "Base total memory: 480MB" in out
        assert "WARNING: Calculated scale factor 0.8333 is less than 1.0" in out
        assert "Scaling factor: 1.0000" in out
        assert "postgres:" in out
        assert "Total allocated: 480MB / 400MB usable" in out

    def test_writes_nothing(self, env_file):
        assert main(["plan", "--total-mb", "990"]) == 0
        assert _backups(env_file.parent) == []

    def test_insufficient_memory(self, workdir, capsys):
        assert main(["plan", "--total-mb", "230"]) == 1
        assert "Not enough memory available" in capsys.readouterr().err

    def test_detects_memory(self, workdir, capsys):
        with patch("mem_ctl.platform.system", return_value="Linux"), \
                patch.object(LinuxProbe, "total_mb", return_value=990):
            assert main(["plan"]) == 0

        out = capsys.readouterr().out
        assert "Total system memory on Linux: 990MB" in out
        assert "Scaling factor: 2.0000" in out


class TestApplyCommand:
    def test_updates_env_file(self, env_file, capsys):
        assert main(["apply", "--total-mb", "990"]) == 0

        content = env_file.read_text(encoding="utf-8")
        assert "POSTGRES_PASSWORD=secret" in content
        assert "INSFORGE_MEMORY=300M" in content
        assert len(_backups(env_file.parent)) == 1

        out = capsys.readouterr().out
        assert "Memory configuration updated in .env" in out
        assert "docker-compose down && docker-compose up -d" in out

    def test_explicit_env_file(self, workdir):
        target = workdir / "stack.env"
        target.write_text("A=1\n", encoding="utf-8")

        assert main(["apply", "-f", str(target), "--total-mb", "990"]) == 0
        assert "DENO_MEMORY=120M" in target.read_text(encoding="utf-8")

    def test_insufficient_memory_leaves_file(self, env_file):
        before = env_file.read_text(encoding="utf-8")

        assert main(["apply", "--total-mb", "230"]) == 1
        assert env_file.read_text(encoding="utf-8") == before
        assert _backups(env_file.parent) == []

    def test_unsupported_platform_leaves_file(self, env_file, capsys):
        before = env_file.read_text(encoding="utf-8")

        with patch("mem_ctl.platform.system", return_value="SunOS"):
            assert main(["apply"]) == 1

        assert "Unsupported OS: sunos" in capsys.readouterr().err
        assert env_file.read_text(encoding="utf-8") == before
        assert _backups(env_file.parent) == []

    def test_non_utf8_env_file(self, workdir):
        env = workdir / ".env"
        env.write_bytes(b"PASSWORD=caf\xe9\n")

        assert main(["apply", "--total-mb", "990"]) == 0
        assert env.read_bytes().startswith(b"PASSWORD=caf\xe9\n\n")

    def test_missing_env_file(self, workdir, capsys):
        assert main(["apply", "--total-mb", "990"]) == 1
        assert "not found" in capsys.readouterr().err

    def test_auto_scale_entry_point(self, env_file):
        with patch("mem_ctl.platform.system", return_value="Linux"), \
                patch.object(LinuxProbe, "total_mb", return_value=430):
            assert mem_ctl.auto_scale() == 0

        assert "POSTGRES_MEMORY=150M" in env_file.read_text(encoding="utf-8")


class TestDetectCommand:
    def test_json(self, workdir, capsys):
        with patch("mem_ctl.platform.system", return_value="Linux"), \
                patch.object(LinuxProbe, "total_mb", return_value=2048):
            assert main(["detect", "--json"]) == 0

        data = json.loads(capsys.readouterr().out)
        assert data["platform"] == "linux"
        assert data["total_mb"] == 2048

    def test_unsupported(self, workdir, capsys):
        with patch("mem_ctl.platform.system", return_value="Windows"):
            assert main(["detect"]) == 1
        assert "Unsupported OS" in capsys.readouterr().err


class TestConfigFile:
    def test_defaults_without_file(self, workdir):
        config = get_config()

        assert config.base_total_mb == 480
        assert config.reserved_mb == 30
        assert [s.key for s in config.services][0] == "POSTGRES_MEMORY"

    def test_found_in_parent(self, workdir, monkeypatch):
        (workdir / "memscale.toml").write_text("[memory]\nreserved_mb = 100\n", encoding="utf-8")
        sub = workdir / "deploy" / "compose"
        sub.mkdir(parents=True)
        monkeypatch.chdir(sub)

        config = get_config()
        assert config.reserved_mb == 100
        assert config.env_file.resolve() == (workdir / ".env").resolve()
        assert config.base_total_mb == 480

    def test_custom_services(self, workdir):
        (workdir / "memscale.toml").write_text(
            '[env]\nfile = "custom.env"\nrestart_command = "make restart"\n\n'
            '[[services]]\nname = "db"\nkey = "DB_MEMORY"\nbase_mb = 200\nscales = true\n\n'
            '[[services]]\nname = "proxy"\nkey = "PROXY_MEMORY"\nbase_mb = 40\n',
            encoding="utf-8",
        )
        (workdir / "custom.env").write_text("A=1\n", encoding="utf-8")

        assert main(["apply", "--total-mb", "510"]) == 0

        content = (workdir / "custom.env").read_text(encoding="utf-8")
        # usable 480 / base 240 = 2.0
        assert "DB_MEMORY=400M" in content
        assert "PROXY_MEMORY=40M" in content
        assert "POSTGRES_MEMORY" not in content

    @pytest.mark.parametrize("body", [
        '[[services]]\nname = "a"\nkey = "A"\nbase_mb = 0\n',
        '[[services]]\nname = "a"\nkey = "A"\nbase_mb = 10\n\n[[services]]\nname = "b"\nkey = "A"\nbase_mb = 10\n',
        '[[services]]\nname = "a"\nbase_mb = 10\n',
        'services = []\n',
        '[memory]\nreserved_mb = "lots"\n',
        'not toml at all [',
        'memory = 5\n',
        'env = "x"\n',
        'services = "db"\n',
        '[env]\nfile = 5\n',
    ])
    def test_invalid(self, workdir, body):
        (workdir / "memscale.toml").write_text(body, encoding="utf-8")

        with pytest.raises(ConfigError):
            get_config()

    def test_wrongly_typed_table_exits_nonzero(self, workdir, capsys):
        (workdir / "memscale.toml").write_text("memory = 5\n", encoding="utf-8")

        assert main(["plan", "--total-mb", "990"]) == 1
        assert "[memory] must be a table" in capsys.readouterr().err

    def test_invalid_exits_nonzero(self, workdir, capsys):
        (workdir / "memscale.toml").write_text("services = []\n", encoding="utf-8")

        assert main(["plan", "--total-mb", "990"]) == 1
        assert "no services defined" in capsys.readouterr().err
