from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

CONFIG_ENV_VAR = "NBHOPPER_CONFIG"
DEFAULT_CONFIG_PATH = Path("~/.config/nbhopper/config.yaml")
DEFAULT_LOG_PATH = Path("~/.cache/nbhopper/nbhopper.log")


@dataclass(slots=True)
class SiteConfig:
    login_host: str = "gadi.nci.org.au"
    workdir_template: str = "/scratch/{project}/{user}/tmp/runjp"
    required_groups: list[str] = field(default_factory=lambda: ["hh5", "dk92"])
    required_storage: list[str] = field(default_factory=lambda: ["gdata/hh5", "gdata/dk92"])
    excluded_groups: list[str] = field(default_factory=lambda: ["access.admin", "gadi.admin"])
    scratch_root: str = "/scratch"
    gdata_root: str = "/g/data"
    join_url_template: str = "https://my.nci.org.au/mancini/project/{group}/join"
    monitor_command: str = "watch -n 10 qstat -x {job_id}"

    def workdir_for(self, project: str, user: str) -> str:
        return self.workdir_template.format(project=project, user=user)


@dataclass(slots=True)
class SshConfig:
    options: str = "-o ServerAliveInterval=60"
    agent_command: str = "ssh-agent"
    add_command: str = "ssh-add"


@dataclass(slots=True)
class PollConfig:
    message_interval_seconds: float = 5.0
    ready_interval_seconds: float = 1.0
    lease_interval_seconds: float = 5.0
    lease_ttl_seconds: int = 120


@dataclass(slots=True)
class NotebookConfig:
    module_use: str = "/g/data/hh5/public/modules"
    module_template: str = "conda/{env}"
    default_env: str = "analysis3"
    command: str = "jupyter lab"
    job_name: str = "jupyter"
    local_start_port: int = 8888
    confirm_cpu_threshold: int = 8
    mem_per_cpu_gb: int = 4


@dataclass(slots=True)
class PathsConfig:
    log: Path | None = None


@dataclass(slots=True)
class AppConfig:
    site: SiteConfig = field(default_factory=SiteConfig)
    ssh: SshConfig = field(default_factory=SshConfig)
    poll: PollConfig = field(default_factory=PollConfig)
    notebook: NotebookConfig = field(default_factory=NotebookConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)


def _section(raw: dict, key: str) -> dict:
    value = raw.get(key, {})
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"`{key}` must be a mapping")
    return value


def _string_list(mapping: dict, key: str, section: str, default: list[str]) -> list[str]:
    if key not in mapping:
        return list(default)
    value = mapping[key]
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValueError(f"`{section}.{key}` must be a list of strings")
    return list(value)


def resolve_config_path(path: str | Path | None) -> Path | None:
    if path is not None:
        return Path(path).expanduser().resolve()
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        return Path(env_path).expanduser().resolve()
    default = DEFAULT_CONFIG_PATH.expanduser()
    if default.exists():
        return default.resolve()
    return None


def load_config(path: str | Path | None = None) -> AppConfig:
    config_path = resolve_config_path(path)
    if config_path is None:
        return AppConfig(paths=PathsConfig(log=DEFAULT_LOG_PATH.expanduser()))

    raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ValueError("Config root must be a mapping")

    site_raw = _section(raw, "site")
    ssh_raw = _section(raw, "ssh")
    poll_raw = _section(raw, "poll")
    notebook_raw = _section(raw, "notebook")
    paths_raw = _section(raw, "paths")

    defaults = SiteConfig()
    site = SiteConfig(
        login_host=str(site_raw.get("login_host", defaults.login_host)),
        workdir_template=str(site_raw.get("workdir_template", defaults.workdir_template)),
        required_groups=_string_list(site_raw, "required_groups", "site", defaults.required_groups),
        required_storage=_string_list(site_raw, "required_storage", "site", defaults.required_storage),
        excluded_groups=_string_list(site_raw, "excluded_groups", "site", defaults.excluded_groups),
        scratch_root=str(site_raw.get("scratch_root", defaults.scratch_root)),
        gdata_root=str(site_raw.get("gdata_root", defaults.gdata_root)),
        join_url_template=str(site_raw.get("join_url_template", defaults.join_url_template)),
        monitor_command=str(site_raw.get("monitor_command", defaults.monitor_command)),
    )
    for placeholder in ("{project}", "{user}"):
        if placeholder not in site.workdir_template:
            raise ValueError(f"`site.workdir_template` must contain {placeholder}")

    ssh_defaults = SshConfig()
    ssh = SshConfig(
        options=str(ssh_raw.get("options", ssh_defaults.options)),
        agent_command=str(ssh_raw.get("agent_command", ssh_defaults.agent_command)),
        add_command=str(ssh_raw.get("add_command", ssh_defaults.add_command)),
    )

    poll = PollConfig(
        message_interval_seconds=float(poll_raw.get("message_interval_seconds", 5.0)),
        ready_interval_seconds=float(poll_raw.get("ready_interval_seconds", 1.0)),
        lease_interval_seconds=float(poll_raw.get("lease_interval_seconds", 5.0)),
        lease_ttl_seconds=int(poll_raw.get("lease_ttl_seconds", 120)),
    )
    if poll.message_interval_seconds <= 0 or poll.ready_interval_seconds <= 0:
        raise ValueError("`poll` intervals must be > 0")
    if poll.lease_interval_seconds <= 0:
        raise ValueError("`poll.lease_interval_seconds` must be > 0")
    if poll.lease_ttl_seconds < 1:
        raise ValueError("`poll.lease_ttl_seconds` must be >= 1")

    nb_defaults = NotebookConfig()
    notebook = NotebookConfig(
        module_use=str(notebook_raw.get("module_use", nb_defaults.module_use)),
        module_template=str(notebook_raw.get("module_template", nb_defaults.module_template)),
        default_env=str(notebook_raw.get("default_env", nb_defaults.default_env)),
        command=str(notebook_raw.get("command", nb_defaults.command)),
        job_name=str(notebook_raw.get("job_name", nb_defaults.job_name)),
        local_start_port=int(notebook_raw.get("local_start_port", nb_defaults.local_start_port)),
        confirm_cpu_threshold=int(notebook_raw.get("confirm_cpu_threshold", nb_defaults.confirm_cpu_threshold)),
        mem_per_cpu_gb=int(notebook_raw.get("mem_per_cpu_gb", nb_defaults.mem_per_cpu_gb)),
    )
    if not 1 <= notebook.local_start_port <= 65535:
        raise ValueError("`notebook.local_start_port` must be a valid TCP port")

    log_value = paths_raw.get("log", str(DEFAULT_LOG_PATH))
    log_path: Path | None = None
    if log_value:
        log_path = Path(str(log_value)).expanduser()
        if not log_path.is_absolute():
            log_path = config_path.parent / log_path

    return AppConfig(
        site=site,
        ssh=ssh,
        poll=poll,
        notebook=notebook,
        paths=PathsConfig(log=log_path),
    )
