#!/usr/bin/env python3
"""
mem-ctl: Scale Docker Compose memory limits to the host.

Keeps the ratio between services' memory limits while growing the scalable
ones with total system memory, and writes the result into the compose .env.

Commands:
    detect      Show detected platform and total memory
    plan        Compute memory limits without writing anything
    apply       Compute memory limits and rewrite the .env file
"""

import argparse
import json
import os
import platform
import shutil
import subprocess
import sys
import tempfile
from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import Optional

try:
    import tomllib
except ImportError:
    import tomli as tomllib  # Python < 3.11

# ANSI colors
GREEN = "\033[92m"
RED = "\033[91m"
YELLOW = "\033[93m"
BLUE = "\033[94m"
RESET = "\033[0m"
BOLD = "\033[1m"

CONFIG_NAME = "memscale.toml"

RESERVED_MB = 30
MINIMUM_USABLE_MB = 300
DEFAULT_ENV_FILE = ".env"
DEFAULT_RESTART_COMMAND = "docker-compose down && docker-compose up -d"

BLOCK_BEGIN = "# Auto-generated memory limits"
BLOCK_END = "# End auto-generated memory limits"
LEGACY_HEADERS = (
    BLOCK_BEGIN,
    "# Total system memory:",
    "# Usable memory:",
    "# Scaling factor:",
)

FACTOR_PLACES = Decimal("0.0001")

# .env files may hold passwords in any encoding
ENV_ERRORS = "surrogateescape"


# --- Errors ---

class MemScaleError(Exception):
    """Base error for mem-ctl."""


class UnsupportedPlatform(MemScaleError):
    """Host OS family has no memory probe."""


class MemoryProbeError(MemScaleError):
    """Memory probe ran but returned nothing usable."""


class InsufficientMemory(MemScaleError):
    """Usable memory is below the configured floor."""


class BackupFailed(MemScaleError):
    """The env file could not be backed up; nothing was modified."""


class ConfigError(MemScaleError):
    """memscale.toml is malformed."""


# --- Config ---

@dataclass(frozen=True)
class Service:
    name: str
    key: str
    base_mb: int
    scales: bool


DEFAULT_SERVICES = (
    Service("postgres", "POSTGRES_MEMORY", 150, True),
    Service("postgrest", "POSTGREST_MEMORY", 50, False),
    Service("insforge", "INSFORGE_MEMORY", 150, True),
    Service("deno", "DENO_MEMORY", 60, True),
    Service("vector", "VECTOR_MEMORY", 50, False),
    Service("node-exporter", "NODE_EXPORTER_MEMORY", 20, False),
)


@dataclass
class Config:
    services: list[Service] = field(default_factory=lambda: list(DEFAULT_SERVICES))
    reserved_mb: int = RESERVED_MB
    minimum_usable_mb: int = MINIMUM_USABLE_MB
    env_file: Path = Path(DEFAULT_ENV_FILE)
    restart_command: str = DEFAULT_RESTART_COMMAND

    @classmethod
    def load(cls, path: Path) -> "Config":
        with open(path, "rb") as f:
            try:
                data = tomllib.load(f)
            except tomllib.TOMLDecodeError as e:
                raise ConfigError(f"{path}: {e}") from e

        memory = data.get("memory", {})
        env = data.get("env", {})
        services_data = data.get("services", DEFAULT_SERVICES_TOML)
        if not isinstance(memory, dict):
            raise ConfigError(f"{path}: [memory] must be a table")
        if not isinstance(env, dict):
            raise ConfigError(f"{path}: [env] must be a table")
        if not isinstance(services_data, list):
            raise ConfigError(f"{path}: services must be an array of tables")
        for name in ("file", "restart_command"):
            if name in env and not isinstance(env[name], str):
                raise ConfigError(f"{path}: env.{name} must be a string")
        try:
            services = [
                Service(
                    name=str(s["name"]),
                    key=str(s["key"]),
                    base_mb=s["base_mb"],
                    scales=bool(s.get("scales", False)),
                )
                for s in services_data
            ]
        except (KeyError, TypeError) as e:
            raise ConfigError(f"{path}: invalid [[services]] entry ({e})") from e

        env_file = Path(env.get("file", DEFAULT_ENV_FILE))
        if not env_file.is_absolute():
            env_file = path.parent / env_file

        config = cls(
            services=services,
            reserved_mb=memory.get("reserved_mb", RESERVED_MB),
            minimum_usable_mb=memory.get("minimum_usable_mb", MINIMUM_USABLE_MB),
            env_file=env_file,
            restart_command=env.get("restart_command", DEFAULT_RESTART_COMMAND),
        )
        config.validate(source=str(path))
        return config

    def validate(self, source: str = "config") -> None:
        if not self.services:
            raise ConfigError(f"{source}: no services defined")
        seen = set()
        for s in self.services:
            if not isinstance(s.base_mb, int) or isinstance(s.base_mb, bool) or s.base_mb <= 0:
                raise ConfigError(f"{source}: {s.name}: base_mb must be a positive integer")
            if s.key in seen:
                raise ConfigError(f"{source}: duplicate env key {s.key}")
            seen.add(s.key)
        for name in ("reserved_mb", "minimum_usable_mb"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise ConfigError(f"{source}: {name} must be a non-negative integer")

    @property
    def base_total_mb(self) -> int:
        return sum(s.base_mb for s in self.services)


DEFAULT_SERVICES_TOML = [asdict(s) for s in DEFAULT_SERVICES]


def get_config() -> Config:
    # Look for memscale.toml in current dir or parent dirs
    search = Path.cwd()
    for _ in range(5):
        candidate = search / CONFIG_NAME
        if candidate.exists():
            return Config.load(candidate)
        search = search.parent
    return Config()


# --- Memory detection ---

class MemoryProbe:
    """Reads total physical memory for one OS family."""

    platform_tag = ""

    def total_mb(self) -> int:
        raise NotImplementedError


class LinuxProbe(MemoryProbe):
    platform_tag = "linux"

    def __init__(self, meminfo: Path = Path("/proc/meminfo")):
        self.meminfo = meminfo

    def total_mb(self) -> int:
        with open(self.meminfo, "r", encoding="utf-8") as f:
            for line in f:
                if line.startswith("MemTotal:"):
                    kb = int(line.split()[1])
                    return kb // 1024
        raise MemoryProbeError(f"MemTotal not found in {self.meminfo}")


class DarwinProbe(MemoryProbe):
    platform_tag = "darwin"

    def total_mb(self) -> int:
        try:
            raw = subprocess.check_output(["sysctl", "-n", "hw.memsize"]).strip()
            return int(raw) // (1024 ** 2)
        except (subprocess.CalledProcessError, ValueError) as e:
            raise MemoryProbeError(f"sysctl hw.memsize failed: {e}") from e


PROBES = {
    LinuxProbe.platform_tag: LinuxProbe,
    DarwinProbe.platform_tag: DarwinProbe,
}


def probe_for(system: Optional[str] = None) -> MemoryProbe:
    """Pick the memory probe for a platform tag (default: this host)."""
    system = (system or platform.system()).lower()
    probe_cls = PROBES.get(system)
    if probe_cls is None:
        raise UnsupportedPlatform(f"Unsupported OS: {system or 'unknown'}")
    return probe_cls()


def get_total_mb(system: Optional[str] = None) -> int:
    """Get total system RAM in MB."""
    total = probe_for(system).total_mb()
    if total <= 0:
        raise MemoryProbeError(f"Detected non-positive total memory: {total}MB")
    return total


# --- Calculation ---

def usable_memory(total_mb: int, reserved_mb: int = RESERVED_MB,
                  minimum_mb: int = MINIMUM_USABLE_MB) -> int:
    """Total minus the system reservation; refuses hosts below the floor."""
    usable = total_mb - reserved_mb
    if usable < minimum_mb:
        raise InsufficientMemory(
            f"Not enough memory available. Need at least {minimum_mb + reserved_mb}MB "
            f"({minimum_mb}MB usable + {reserved_mb}MB reserved); "
            f"available: {total_mb}MB, usable after reservation: {usable}MB"
        )
    return usable


def _raw_factor(usable_mb: int, base_total_mb: int) -> Decimal:
    return (Decimal(usable_mb) / Decimal(base_total_mb)).quantize(
        FACTOR_PLACES, rounding=ROUND_HALF_UP
    )


def compute_scale_factor(usable_mb: int, base_total_mb: int) -> float:
    """usable / base to 4 decimal places, never below 1.0.

    The floor keeps the base configuration runnable on small hosts, even
    though the total can then exceed usable memory.
    """
    return float(max(_raw_factor(usable_mb, base_total_mb), Decimal(1)))


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


@dataclass
class Allocation:
    name: str
    key: str
    base_mb: int
    scales: bool
    computed_mb: int


def allocate(services: list[Service], factor: float) -> list[Allocation]:
    """Apply the scale factor to scaling services; fixed ones keep their base."""
    scale = Decimal(str(factor))
    allocations = []
    for s in services:
        mb = round_half_up(s.base_mb * scale) if s.scales else s.base_mb
        allocations.append(Allocation(s.name, s.key, s.base_mb, s.scales, mb))
    return allocations


@dataclass
class MemoryPlan:
    total_mb: int
    reserved_mb: int
    usable_mb: int
    base_total_mb: int
    raw_factor: float
    factor: float
    allocations: list[Allocation]

    @property
    def clamped(self) -> bool:
        return self.raw_factor < self.factor

    @property
    def total_allocated_mb(self) -> int:
        return sum(a.computed_mb for a in self.allocations)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["clamped"] = self.clamped
        data["total_allocated_mb"] = self.total_allocated_mb
        return data


def build_plan(config: Config, total_mb: int) -> MemoryPlan:
    usable = usable_memory(total_mb, config.reserved_mb, config.minimum_usable_mb)
    base_total = config.base_total_mb
    factor = compute_scale_factor(usable, base_total)
    return MemoryPlan(
        total_mb=total_mb,
        reserved_mb=config.reserved_mb,
        usable_mb=usable,
        base_total_mb=base_total,
        raw_factor=float(_raw_factor(usable, base_total)),
        factor=factor,
        allocations=allocate(config.services, factor),
    )


# --- Env file ---

def backup_env_file(path: Path, now: Optional[datetime] = None) -> Path:
    """Copy the env file to <file>.backup.<YYYYMMDD_HHMMSS>.

    An existing backup with the same stamp is never overwritten; a numeric
    suffix is added instead.
    """
    now = now or datetime.now()
    if not path.is_file():
        raise BackupFailed(f"{path} not found; refusing to write memory limits")
    stem = f"{path.name}.backup.{now:%Y%m%d_%H%M%S}"
    backup = path.with_name(stem)
    n = 1
    while backup.exists():
        backup = path.with_name(f"{stem}.{n}")
        n += 1
    try:
        shutil.copy2(path, backup)
    except OSError as e:
        raise BackupFailed(f"Could not write backup {backup}: {e}") from e
    return backup


def _find_block_end(lines: list[str], start: int) -> Optional[int]:
    for i in range(start + 1, len(lines)):
        if lines[i].strip() == BLOCK_END:
            return i
        if lines[i].startswith(BLOCK_BEGIN):
            return None
    return None


def _is_generated_line(line: str, keys: list[str]) -> bool:
    return line.startswith(LEGACY_HEADERS) or any(line.startswith(f"{k}=") for k in keys)


def strip_generated(lines: list[str], keys: list[str]) -> list[str]:
    """Drop previously generated memory settings, keeping everything else in order."""
    kept: list[str] = []
    i = 0
    while i < len(lines):
        line = lines[i]
        if line.startswith(BLOCK_BEGIN):
            # the blank separator written above every block
            if kept and not kept[-1].strip():
                kept.pop()
            end = _find_block_end(lines, i)
            if end is not None:
                i = end + 1
                continue
        if line.strip() == BLOCK_END or _is_generated_line(line, keys):
            i += 1
            continue
        kept.append(line)
        i += 1
    return kept


def render_block(plan: MemoryPlan, now: Optional[datetime] = None) -> list[str]:
    now = now or datetime.now()
    lines = [
        "",
        f"{BLOCK_BEGIN} - {now:%a %b %d %H:%M:%S %Y}",
        f"# Total system memory: {plan.total_mb}MB",
        f"# Usable memory: {plan.usable_mb}MB (after {plan.reserved_mb}MB system reservation)",
        f"# Scaling factor: {plan.factor:.4f}",
    ]
    lines += [f"{a.key}={a.computed_mb}M" for a in plan.allocations]
    lines.append(BLOCK_END)
    return lines


def _read_env(path: Path) -> tuple[list[str], str]:
    """Lines of the env file and the newline it uses.

    Bytes that are not UTF-8 survive as surrogates and are written back as-is.
    """
    with open(path, "r", encoding="utf-8", errors=ENV_ERRORS, newline="") as f:
        content = f.read()
    newline = "\r\n" if "\r\n" in content else "\n"
    lines = content.split(newline)
    if lines and lines[-1] == "":
        lines.pop()
    return lines, newline


def _atomic_write(path: Path, content: str) -> None:
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", errors=ENV_ERRORS, newline="") as f:
            f.write(content)
        shutil.copymode(path, tmp)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def write_env_file(path: Path, plan: MemoryPlan, now: Optional[datetime] = None) -> Path:
    """Back up the env file, then replace its generated block. Returns the backup path."""
    now = now or datetime.now()
    backup = backup_env_file(path, now)

    lines, newline = _read_env(path)
    lines = strip_generated(lines, [a.key for a in plan.allocations])
    lines += render_block(plan, now)

    _atomic_write(path, newline.join(lines) + newline)
    return backup


# --- Output ---

def print_status(ok: bool, msg: str) -> None:
    """Print a status line."""
    icon = f"{GREEN}✓{RESET}" if ok else f"{RED}✗{RESET}"
    print(f"  {icon} {msg}")


def print_plan(plan: MemoryPlan) -> None:
    print(f"Usable memory after reservation: {plan.usable_mb}MB "
          f"(reserved {plan.reserved_mb}MB for system)")
    if plan.clamped:
        print(f"{YELLOW}WARNING: Calculated scale factor {plan.raw_factor:.4f} is less than 1.0{RESET}")
        print(f"{YELLOW}Setting scale factor to 1.0 to ensure base configuration can run{RESET}")
    print(f"Scaling factor: {plan.factor:.4f}")
    print_allocation_table(plan)


def print_allocation_table(plan: MemoryPlan) -> None:
    width = max(len(a.name) for a in plan.allocations) + 1
    print(f"\n{BOLD}=== Calculated Memory Allocation ==={RESET}")
    for a in plan.allocations:
        print(f"{a.name + ':':<{width}} {a.computed_mb}MB (base: {a.base_mb}MB)")
    print("---")
    color = YELLOW if plan.total_allocated_mb > plan.usable_mb else ""
    print(f"{color}Total allocated: {plan.total_allocated_mb}MB / {plan.usable_mb}MB usable"
          f"{RESET if color else ''}")
    print()


def _detect(args: argparse.Namespace) -> int:
    if args.total_mb is not None:
        print(f"Total system memory (override): {args.total_mb}MB")
        return args.total_mb
    system = platform.system()
    total = get_total_mb(system)
    name = {"linux": "Linux", "darwin": "macOS"}.get(system.lower(), system)
    print(f"Total system memory on {name}: {total}MB")
    return total


# --- Commands ---

def cmd_detect(args: argparse.Namespace) -> int:
    """Show detected platform and total memory."""
    system = platform.system()
    total = get_total_mb(system)

    if args.json:
        print(json.dumps({"platform": system.lower(), "arch": platform.machine(), "total_mb": total}))
        return 0

    print(f"{BOLD}System{RESET}")
    print(f"  Platform: {system}")
    print(f"  Arch: {platform.machine()}")
    print(f"  RAM: {total} MB")
    return 0


def cmd_plan(args: argparse.Namespace) -> int:
    """Compute memory limits without writing anything."""
    config = get_config()

    if args.json:
        total = args.total_mb if args.total_mb is not None else get_total_mb()
        print(json.dumps(build_plan(config, total).to_dict(), indent=2))
        return 0

    print(f"Base total memory: {config.base_total_mb}MB")
    plan = build_plan(config, _detect(args))
    print_plan(plan)
    return 0


def cmd_apply(args: argparse.Namespace) -> int:
    """Compute memory limits and rewrite the env file."""
    config = get_config()
    env_path = Path(args.env_file) if args.env_file else config.env_file

    print(f"Base total memory: {config.base_total_mb}MB")
    plan = build_plan(config, _detect(args))
    print_plan(plan)

    backup = write_env_file(env_path, plan)
    print_status(True, f"Memory configuration updated in {env_path}")
    print_status(True, f"Backup saved to {backup}")
    print("\nTo apply these settings, restart services:")
    print(f"   {BLUE}{config.restart_command}{RESET}")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="mem-ctl",
        description="Scale Docker Compose memory limits to the host",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # detect
    detect_p = subparsers.add_parser("detect", help="Show detected platform and total memory")
    detect_p.add_argument("--json", action="store_true", help="Output as JSON")

    # plan
    plan_p = subparsers.add_parser("plan", help="Compute memory limits without writing")
    plan_p.add_argument("--total-mb", type=int, help="Use this total instead of detecting it")
    plan_p.add_argument("--json", action="store_true", help="Output as JSON")

    # apply
    apply_p = subparsers.add_parser("apply", help="Compute memory limits and rewrite the env file")
    apply_p.add_argument("-f", "--env-file", help="Env file to update (default from memscale.toml or .env)")
    apply_p.add_argument("--total-mb", type=int, help="Use this total instead of detecting it")

    args = parser.parse_args(argv)

    commands = {
        "detect": cmd_detect,
        "plan": cmd_plan,
        "apply": cmd_apply,
    }

    try:
        return commands[args.command](args)
    except (MemScaleError, OSError) as e:
        print(f"{RED}Error: {e}{RESET}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted")
        return 130


def auto_scale() -> int:
    """Entry point matching `mem-ctl apply` with defaults."""
    return main(["apply"])


if __name__ == "__main__":
    sys.exit(main())
