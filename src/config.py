"""Profile configuration management.

Configuration is loaded from a config directory of YAML files:
- site.yaml: Site-wide defaults (location, subscription, provider, state_dir)
- profiles/*.yaml: Per-target overrides (one per subscription/environment)
- stacks/*.yaml: Stack definitions (see stack.py)

The merge order is: built-in defaults → site.yaml → profiles/{name}.yaml.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import yaml


class ConfigError(Exception):
    """Configuration error."""


SUPPORTED_PROVIDERS = ('azcli', 'local')


@dataclass
class ProfileConfig:
    """Resolved configuration for a deployment target.

    A profile binds a stack run to a provider backend and an Azure
    subscription. When the profile file is missing and the name is 'local',
    the profile resolves to the simulated local provider.
    """
    name: str
    config_file: Optional[Path] = None
    provider: str = 'azcli'
    subscription: str = ''
    location: str = 'eastus'
    az_path: str = 'az'
    timeout: int = 600
    state_dir: Optional[Path] = None

    def __post_init__(self):
        if isinstance(self.config_file, str):
            self.config_file = Path(self.config_file)
        if isinstance(self.state_dir, str):
            self.state_dir = Path(self.state_dir)

        if self.config_file is not None and self.config_file.exists():
            self._load_from_yaml()

        if self.state_dir is None:
            self.state_dir = get_base_dir() / '.states'

        if self.provider not in SUPPORTED_PROVIDERS:
            raise ConfigError(
                f"Unknown provider '{self.provider}' in profile '{self.name}'. "
                f"Supported: {', '.join(SUPPORTED_PROVIDERS)}"
            )

    def _load_from_yaml(self):
        """Load configuration from YAML with site defaults merged underneath."""
        config_dir = self.config_file.parent.parent

        site_defaults = {}
        site_file = config_dir / 'site.yaml'
        if site_file.exists():
            site_defaults = _parse_yaml(site_file).get('defaults', {}) or {}

        profile = _parse_yaml(self.config_file)
        merged = {**site_defaults, **profile}

        self.provider = str(merged.get('provider', self.provider))
        self.subscription = str(merged.get('subscription', self.subscription) or '')
        self.location = str(merged.get('location', self.location))
        self.az_path = str(merged.get('az_path', self.az_path))

        try:
            self.timeout = int(merged.get('timeout', self.timeout))
        except (TypeError, ValueError):
            raise ConfigError(f"Profile {self.config_file}: timeout must be an integer")

        if state_dir := merged.get('state_dir'):
            path = Path(os.path.expanduser(str(state_dir)))
            if not path.is_absolute():
                path = config_dir / path
            self.state_dir = path

    @property
    def is_local(self) -> bool:
        return self.provider == 'local'


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must be a YAML object (dict)")
    return data


def get_base_dir() -> Path:
    """Get the azstack checkout directory."""
    return Path(__file__).parent.parent  # src/ -> azstack/


def get_config_dir() -> Path:
    """Discover the config directory.

    Resolution order:
    1. $AZSTACK_CONFIG environment variable
    2. config/ directory inside the checkout (dev workspace)
    3. /usr/local/etc/azstack/ (installed)
    """
    if env_path := os.environ.get('AZSTACK_CONFIG'):
        path = Path(env_path)
        if path.exists():
            return path
        raise ConfigError(f"AZSTACK_CONFIG={env_path} does not exist")

    local = get_base_dir() / 'config'
    if local.exists():
        return local

    fhs_path = Path('/usr/local/etc/azstack')
    if fhs_path.exists():
        return fhs_path

    raise ConfigError(
        "config directory not found. "
        "Set AZSTACK_CONFIG or create config/ in the checkout."
    )


def list_profiles() -> list[str]:
    """List available profiles from the config directory."""
    try:
        config_dir = get_config_dir()
    except ConfigError:
        return []

    profiles_dir = config_dir / 'profiles'
    if not profiles_dir.exists():
        return []
    return sorted(f.stem for f in profiles_dir.glob('*.yaml') if f.is_file())


def load_profile(name: str) -> ProfileConfig:
    """Load configuration for a named profile.

    The built-in 'local' profile needs no file.
    """
    try:
        config_dir = get_config_dir()
    except ConfigError:
        if name == 'local':
            return ProfileConfig(name='local', provider='local')
        raise

    profile_file = config_dir / 'profiles' / f'{name}.yaml'
    if profile_file.exists():
        return ProfileConfig(name=name, config_file=profile_file)

    if name == 'local':
        site_defaults = {}
        site_file = config_dir / 'site.yaml'
        if site_file.exists():
            site_defaults = _parse_yaml(site_file).get('defaults', {}) or {}
        config = ProfileConfig(name='local', provider='local')
        if location := site_defaults.get('location'):
            config.location = str(location)
        return config

    available = list_profiles()
    raise ConfigError(
        f"Profile '{name}' not found at {profile_file}. "
        f"Available: {', '.join(available) if available else 'none configured'}"
    )
