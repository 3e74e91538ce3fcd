"""cloud-init payloads for virtual machine custom data.

A payload lists packages to install, files to write, and commands to run at
first boot. It is rendered as a '#cloud-config' YAML document and passed to
the VM as custom data. Keys not modeled here are carried through unchanged.
"""

import hashlib
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Union

import yaml

from config import ConfigError

logger = logging.getLogger(__name__)

HEADER = '#cloud-config'

# Keys modeled by CloudInitConfig; anything else goes to .extra
_MODELED_KEYS = {'packages', 'runcmd', 'write_files', 'package_update', 'package_upgrade'}


@dataclass
class WriteFile:
    """A file written to the VM before runcmd executes."""
    path: str
    content: str
    permissions: Optional[str] = None
    owner: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict, index: int = 0) -> 'WriteFile':
        if not isinstance(data, dict):
            raise ConfigError(f"write_files[{index}] must be a mapping")
        for key in ('path', 'content'):
            if key not in data:
                raise ConfigError(f"write_files[{index}] missing required field: {key}")
        permissions = data.get('permissions')
        if permissions is not None:
            permissions = str(permissions)
        return cls(
            path=str(data['path']),
            content=str(data['content']),
            permissions=permissions,
            owner=data.get('owner'),
        )

    def to_dict(self) -> dict:
        d: dict[str, Any] = {'path': self.path, 'content': self.content}
        if self.permissions is not None:
            d['permissions'] = self.permissions
        if self.owner is not None:
            d['owner'] = self.owner
        return d


@dataclass
class CloudInitConfig:
    """A cloud-config document.

    Attributes:
        packages: Packages installed by the distro package manager
        runcmd: Commands run once at first boot (strings or argv lists)
        write_files: Files written before runcmd
        package_update: Refresh package indexes before installing
        package_upgrade: Upgrade installed packages
        extra: Unmodeled top-level keys, emitted verbatim
    """
    packages: list[str] = field(default_factory=list)
    runcmd: list[Union[str, list[str]]] = field(default_factory=list)
    write_files: list[WriteFile] = field(default_factory=list)
    package_update: bool = True
    package_upgrade: bool = False
    extra: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'CloudInitConfig':
        """Create and validate a CloudInitConfig from a parsed document."""
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ConfigError("cloud-init document must be a mapping")

        packages = data.get('packages', []) or []
        if not isinstance(packages, list) or not all(isinstance(p, str) for p in packages):
            raise ConfigError("cloud-init 'packages' must be a list of strings")

        runcmd = data.get('runcmd', []) or []
        if not isinstance(runcmd, list):
            raise ConfigError("cloud-init 'runcmd' must be a list")
        for i, cmd in enumerate(runcmd):
            if isinstance(cmd, list):
                if not all(isinstance(part, str) for part in cmd):
                    raise ConfigError(f"cloud-init runcmd[{i}] argv entries must be strings")
            elif not isinstance(cmd, str):
                raise ConfigError(f"cloud-init runcmd[{i}] must be a string or list of strings")

        write_files_data = data.get('write_files', []) or []
        if not isinstance(write_files_data, list):
            raise ConfigError("cloud-init 'write_files' must be a list")
        write_files = [WriteFile.from_dict(wf, i) for i, wf in enumerate(write_files_data)]

        return cls(
            packages=list(packages),
            runcmd=list(runcmd),
            write_files=write_files,
            package_update=bool(data.get('package_update', True)),
            package_upgrade=bool(data.get('package_upgrade', False)),
            extra={k: v for k, v in data.items() if k not in _MODELED_KEYS},
        )

    @classmethod
    def web_server(
        cls,
        packages: tuple[str, ...] = ('nginx',),
        service: str = 'nginx',
        index_html: Optional[str] = None,
    ) -> 'CloudInitConfig':
        """Payload that installs a web server and starts it at boot."""
        write_files = []
        if index_html is not None:
            write_files.append(WriteFile(
                path='/var/www/html/index.html',
                content=index_html,
                permissions='0644',
            ))
        return cls(
            packages=list(packages),
            runcmd=[
                ['systemctl', 'enable', service],
                ['systemctl', 'start', service],
            ],
            write_files=write_files,
        )

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'package_update': self.package_update,
            'package_upgrade': self.package_upgrade,
        }
        if self.packages:
            d['packages'] = list(self.packages)
        if self.write_files:
            d['write_files'] = [wf.to_dict() for wf in self.write_files]
        if self.runcmd:
            d['runcmd'] = list(self.runcmd)
        d.update(self.extra)
        return d

    def render(self) -> str:
        """Render as '#cloud-config' user data."""
        body = yaml.safe_dump(self.to_dict(), default_flow_style=False, sort_keys=False)
        return f'{HEADER}\n{body}'

    def fingerprint(self) -> str:
        """sha256 of the rendered document."""
        return hashlib.sha256(self.render().encode('utf-8')).hexdigest()


def parse_cloud_init(text: str, source: str = '<inline>') -> CloudInitConfig:
    """Parse cloud-config text. The '#cloud-config' header is optional."""
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in cloud-init {source}: {e}")
    return CloudInitConfig.from_dict(data)


def load_cloud_init(path: Path) -> CloudInitConfig:
    """Load a cloud-config file."""
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"cloud-init file not found: {path}")
    logger.debug(f"Loading cloud-init payload from {path}")
    return parse_cloud_init(path.read_text(encoding='utf-8'), source=str(path))


def resolve_cloud_init(value: Any, base_dir: Optional[Path] = None) -> CloudInitConfig:
    """Resolve a stack's cloud_init property (path or inline mapping)."""
    if isinstance(value, CloudInitConfig):
        return value
    if isinstance(value, dict):
        return CloudInitConfig.from_dict(value)
    if isinstance(value, str):
        path = Path(value).expanduser()
        if not path.is_absolute() and base_dir is not None:
            path = base_dir / path
        return load_cloud_init(path)
    raise ConfigError("cloud_init must be a file path or an inline mapping")
