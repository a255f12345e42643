"""
Configuration module for ProxyFlare.
"""

import ipaddress
import os
import re
from pathlib import Path
from typing import List, Optional, Union

import yaml
from pydantic import BaseModel

ZONE_ID_PATTERN = re.compile(r"^[0-9a-f]{32}$")
FQDN_PATTERN = re.compile(
    r"^(?=.{1,253}$)([a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z]{2,63}$", re.IGNORECASE
)


class Config(BaseModel):
    """Configuration for ProxyFlare."""

    # Cloudflare
    cloudflare_api_token: str = ""
    zone_id: str = ""
    domain: str = ""

    # Caddy
    caddyfile_path: str = "/etc/caddy/Caddyfile"
    caddyfile_container_path: str = ""
    container_name: str = ""
    docker_method: str = "plain"
    compose_file_path: str = ""
    caddy_binary_path: str = "caddy"
    validation_command: str = ""

    # Defaults for new and synced entries
    default_cname_target: str = ""
    default_proxied: bool = True
    default_port: int = 80
    default_ssl: bool = False
    default_lan_subnet: str = ""
    default_allowed_external_ip: str = ""

    # Backups
    backup_retention: str = "30d"
    backup_max_backups: int = 0
    backup_max_size_mb: int = 0

    # Audit log
    audit_dir: str = "~/.config/proxyflare"
    audit_max_entries: int = 1000

    # Logging configuration
    log_level: str = "info"

    @classmethod
    def from_yaml(cls, config_path: Optional[Union[str, Path]] = None) -> "Config":
        """
        Load configuration from a YAML file.

        Args:
            config_path: Path to the YAML configuration file

        Returns:
            Config: Config instance populated with values from the YAML file
        """
        default_paths = [
            Path("./proxyflare.yaml"),
            Path("./proxyflare.yml"),
            Path("~/.config/proxyflare/config.yaml").expanduser(),
        ]

        if config_path:
            paths = [Path(config_path)]
        else:
            paths = default_paths

        config_data = {}
        for path in paths:
            if path.exists():
                with open(path, "r") as f:
                    yaml_content = cls._substitute_env_vars(f.read())
                    config_data = yaml.safe_load(yaml_content) or {}
                break

        return cls(**cls._flatten_config(config_data))

    @staticmethod
    def _substitute_env_vars(content: str) -> str:
        """
        Substitute ${VAR} and ${VAR:-default} references with environment values.

        Args:
            content: Configuration content

        Returns:
            str: Configuration content with environment variables substituted
        """
        pattern = r"\${([^}]+)}"

        def replace_env_var(match):
            env_var = match.group(1)
            if ":-" in env_var:
                env_var, default = env_var.split(":-", 1)
                return os.environ.get(env_var, default)
            return os.environ.get(env_var, "")

        return re.sub(pattern, replace_env_var, content)

    @staticmethod
    def _flatten_config(config_data: dict) -> dict:
        """
        Flatten the nested YAML sections into Config fields.

        Args:
            config_data: Nested configuration data

        Returns:
            dict: Flattened configuration data
        """
        flat_config = {}

        cloudflare = config_data.get("cloudflare") or {}
        flat_config["cloudflare_api_token"] = cloudflare.get("api_token") or ""
        flat_config["zone_id"] = cloudflare.get("zone_id") or ""
        flat_config["domain"] = config_data.get("domain", "") or ""

        caddy = config_data.get("caddy") or {}
        for key, default in (
            ("caddyfile_path", "/etc/caddy/Caddyfile"),
            ("caddyfile_container_path", ""),
            ("container_name", ""),
            ("docker_method", "plain"),
            ("compose_file_path", ""),
            ("caddy_binary_path", "caddy"),
            ("validation_command", ""),
        ):
            value = caddy.get(key)
            flat_config[key] = default if value is None else value

        defaults = config_data.get("defaults") or {}
        flat_config["default_cname_target"] = defaults.get("cname_target") or ""
        flat_config["default_proxied"] = defaults.get("proxied", True)
        flat_config["default_port"] = defaults.get("port", 80)
        flat_config["default_ssl"] = defaults.get("ssl", False)
        flat_config["default_lan_subnet"] = defaults.get("lan_subnet") or ""
        flat_config["default_allowed_external_ip"] = defaults.get("allowed_external_ip") or ""

        backup = config_data.get("backup") or {}
        flat_config["backup_retention"] = str(backup.get("retention", "30d"))
        flat_config["backup_max_backups"] = backup.get("max_backups", 0)
        flat_config["backup_max_size_mb"] = backup.get("max_size_mb", 0)

        audit = config_data.get("audit") or {}
        flat_config["audit_dir"] = audit.get("dir") or "~/.config/proxyflare"
        flat_config["audit_max_entries"] = audit.get("max_entries", 1000)

        logging = config_data.get("logging") or {}
        flat_config["log_level"] = logging.get("level", "info")

        return flat_config

    def parse_duration(self, duration_str: str) -> int:
        """
        Parse a duration string like '30d' into seconds.

        Args:
            duration_str: Duration string

        Returns:
            int: Duration in seconds (0 if empty or malformed)
        """
        if not duration_str:
            return 0

        match = re.match(r"^(\d+)([smhd])$", duration_str.strip())
        if not match:
            return 0

        value, unit = match.groups()
        value = int(value)

        if unit == "s":
            return value
        elif unit == "m":
            return value * 60
        elif unit == "h":
            return value * 60 * 60
        return value * 60 * 60 * 24

    @property
    def retention_days(self) -> int:
        """Backup retention in whole days (0 disables the age policy)."""
        return self.parse_duration(self.backup_retention) // (60 * 60 * 24)

    def validate_structure(self) -> List[str]:
        """
        Check the configuration for problems.

        Returns:
            List[str]: Human readable problems; empty when the config is usable
        """
        problems = []

        if not self.cloudflare_api_token:
            problems.append("cloudflare.api_token is required")
        if not ZONE_ID_PATTERN.match(self.zone_id):
            problems.append("cloudflare.zone_id must be 32 lowercase hex characters")
        if not FQDN_PATTERN.match(self.domain):
            problems.append(f"domain '{self.domain}' is not a valid domain name")
        if not self.caddyfile_path:
            problems.append("caddy.caddyfile_path is required")
        if not self.container_name and not self.caddy_binary_path:
            problems.append(
                "either caddy.container_name or caddy.caddy_binary_path is required"
            )
        if self.docker_method not in ("plain", "compose"):
            problems.append("caddy.docker_method must be 'plain' or 'compose'")

        for name, value in (
            ("defaults.lan_subnet", self.default_lan_subnet),
            ("defaults.allowed_external_ip", self.default_allowed_external_ip),
        ):
            if not value:
                continue
            try:
                ipaddress.ip_network(value, strict=False)
            except ValueError:
                problems.append(f"{name} '{value}' is not a valid CIDR")

        if not 1 <= self.default_port <= 65535:
            problems.append(f"defaults.port {self.default_port} is out of range")
        retention = self.parse_duration(self.backup_retention)
        if self.backup_retention and not retention:
            problems.append(f"backup.retention '{self.backup_retention}' is not a duration")
        elif retention % (60 * 60 * 24):
            # The age policy works in whole days.
            problems.append(
                f"backup.retention '{self.backup_retention}' must be a whole number of days"
            )

        return problems
