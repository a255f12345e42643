"""
Named configuration profiles for ProxyFlare.

A profile is a configuration file in the same YAML layout as the main config,
stored as `<config_dir>/profiles/<name>.yaml` with an extra `profile` section
holding its name and creation time. The last profile selected is remembered in
`<config_dir>/last_profile.txt`.
"""

import io
import logging
import re
import tarfile
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Union

import yaml

from proxyflare.config.config import Config
from proxyflare.saga.errors import ProxyFlareError

DEFAULT_CONFIG_DIR = "~/.config/proxyflare"
PROFILE_MEMBER = "profile.yaml"
AUDIT_MEMBER = "audit.log"


class ProfileError(ProxyFlareError):
    """A profile is missing, invalid or clashes with an existing one."""


def sanitize_profile_name(name: str) -> str:
    """Replace characters that are unsafe in file names with underscores."""
    safe = re.sub(r"[^A-Za-z0-9._-]", "_", name.strip())
    return safe or "imported"


class ProfileStore:
    """
    Stores, loads, exports and imports configuration profiles.
    """

    def __init__(self, config_dir: Union[str, Path] = DEFAULT_CONFIG_DIR):
        """
        Initialize a ProfileStore.

        Args:
            config_dir: Directory holding the profiles directory and the
                last-used marker
        """
        self.config_dir = Path(config_dir).expanduser()
        self.profiles_dir = self.config_dir / "profiles"
        self.last_profile_path = self.config_dir / "last_profile.txt"
        self.logger = logging.getLogger("proxyflare.config.profiles")

    def list_profiles(self) -> List[str]:
        """
        List profile names.

        Returns:
            List[str]: Sorted names; empty when no profile has been saved
        """
        if not self.profiles_dir.is_dir():
            return []
        names = {
            path.stem
            for path in self.profiles_dir.iterdir()
            if path.is_file() and path.suffix in (".yaml", ".yml")
        }
        return sorted(names)

    def profile_path(self, name: str) -> Path:
        """
        Locate a profile file, preferring .yaml over .yml.

        Raises:
            ProfileError: If no such profile exists
        """
        for suffix in (".yaml", ".yml"):
            path = self.profiles_dir / f"{name}{suffix}"
            if path.is_file():
                return path
        raise ProfileError(f"profile '{name}' not found")

    def load_profile(self, name: str) -> Config:
        """
        Load a profile as a Config.

        Args:
            name: Profile name

        Returns:
            Config: Configuration with environment references substituted

        Raises:
            ProfileError: If the profile does not exist
        """
        return Config.from_yaml(self.profile_path(name))

    def save_profile(self, name: str, config_data: dict, overwrite: bool = False) -> Path:
        """
        Save nested configuration data as a profile.

        Environment references such as ${CF_API_TOKEN} are stored as written
        and only substituted to validate the profile.

        Args:
            name: Profile name
            config_data: Nested configuration, as found in a config file
            overwrite: Replace an existing profile of the same name

        Returns:
            Path: The profile file written

        Raises:
            ProfileError: If the name is taken or the configuration is invalid
        """
        if sanitize_profile_name(name) != name:
            raise ProfileError(
                f"profile name '{name}' may only use letters, digits, '.', '_' and '-'"
            )
        if not overwrite and any(n.lower() == name.lower() for n in self.list_profiles()):
            raise ProfileError(f"profile '{name}' already exists")

        data = dict(config_data)
        resolved = _substitute(data)
        problems = Config(**Config._flatten_config(resolved)).validate_structure()
        if problems:
            raise ProfileError(f"profile '{name}' is invalid: {'; '.join(problems)}")

        metadata = dict(data.get("profile") or {})
        metadata["name"] = name
        metadata.setdefault("created_at", datetime.now().isoformat(timespec="seconds"))
        data["profile"] = metadata

        self.profiles_dir.mkdir(parents=True, exist_ok=True)
        path = self.profiles_dir / f"{name}.yaml"
        with open(path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
        self.logger.info(f"Saved profile {name} to {path}")
        return path

    def save_from_file(
        self, name: str, config_path: Union[str, Path], overwrite: bool = False
    ) -> Path:
        """Save an existing configuration file as a profile."""
        try:
            with open(Path(config_path).expanduser(), "r") as f:
                config_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ProfileError(f"failed to parse {config_path}: {e}") from e
        return self.save_profile(name, config_data, overwrite=overwrite)

    def delete_profile(self, name: str) -> None:
        """
        Delete a profile; deleting a missing profile is not an error.

        The last-used marker is cleared when it names the deleted profile.
        """
        for suffix in (".yaml", ".yml"):
            (self.profiles_dir / f"{name}{suffix}").unlink(missing_ok=True)
        if self.get_last_used() == name:
            self.last_profile_path.unlink(missing_ok=True)
        self.logger.info(f"Deleted profile {name}")

    def get_last_used(self) -> Optional[str]:
        """Return the last selected profile name, if any."""
        if not self.last_profile_path.is_file():
            return None
        return self.last_profile_path.read_text(encoding="utf-8").strip() or None

    def set_last_used(self, name: str) -> None:
        """
        Remember a profile as the one to use when none is given.

        Raises:
            ProfileError: If the profile does not exist
        """
        self.profile_path(name)
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.last_profile_path.write_text(name, encoding="utf-8")

    def export_profile(
        self, name: str, output_path: Union[str, Path], audit_log: Optional[Path] = None
    ) -> Path:
        """
        Bundle a profile, and its audit log when present, into a .tar.gz archive.

        Args:
            name: Profile name
            output_path: Archive to write
            audit_log: Audit log to include; skipped if missing

        Returns:
            Path: The archive written

        Raises:
            ProfileError: If the profile does not exist
        """
        profile_bytes = self.profile_path(name).read_bytes()
        output_path = Path(output_path).expanduser()
        output_path.parent.mkdir(parents=True, exist_ok=True)

        with tarfile.open(output_path, "w:gz") as archive:
            _add_member(archive, PROFILE_MEMBER, profile_bytes)
            if audit_log is not None and audit_log.is_file():
                _add_member(archive, AUDIT_MEMBER, audit_log.read_bytes())

        self.logger.info(f"Exported profile {name} to {output_path}")
        return output_path

    def import_profile(self, archive_path: Union[str, Path], overwrite: bool = False) -> str:
        """
        Import the profile from an archive written by export_profile.

        The profile keeps the name recorded in its `profile` section, made
        safe for use as a file name.

        Args:
            archive_path: Archive to read
            overwrite: Replace an existing profile of the same name

        Returns:
            str: Name of the imported profile

        Raises:
            ProfileError: If the archive holds no usable profile
        """
        try:
            with tarfile.open(Path(archive_path).expanduser(), "r:gz") as archive:
                try:
                    member = archive.extractfile(PROFILE_MEMBER)
                except KeyError:
                    member = None
                if member is None:
                    raise ProfileError(f"{archive_path} does not contain {PROFILE_MEMBER}")
                data = yaml.safe_load(member.read()) or {}
        except (tarfile.TarError, yaml.YAMLError) as e:
            raise ProfileError(f"failed to read {archive_path}: {e}") from e

        recorded = (data.get("profile") or {}).get("name")
        if not recorded:
            raise ProfileError("imported profile has no name")
        name = sanitize_profile_name(str(recorded))
        self.save_profile(name, data, overwrite=overwrite)
        return name


def _substitute(value):
    if isinstance(value, str):
        return Config._substitute_env_vars(value)
    if isinstance(value, dict):
        return {k: _substitute(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_substitute(v) for v in value]
    return value


def _add_member(archive: tarfile.TarFile, name: str, data: bytes) -> None:
    info = tarfile.TarInfo(name)
    info.size = len(data)
    info.mode = 0o644
    info.mtime = int(datetime.now().timestamp())
    archive.addfile(info, io.BytesIO(data))
