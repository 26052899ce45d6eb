"""Explicit build context passed through the pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Union

from extforge.pipeline.registry import HttpRegistryClient, RegistryClient
from extforge.pipeline.upload import DEFAULT_MAX_ATTEMPTS, DEFAULT_RETRY_DELAY, DEFAULT_VERSION_CEILING
from extforge.utils.exceptions import ConfigurationError


@dataclass
class BuildContext:
    """Everything one build needs to know about its project and environment.

    Relative paths in the configuration are resolved against ``project_root``.

    Attributes:
        project_root: Root of the extension project
        extension_dir: Directory that is zipped into the inner archive
        manifest_path: The ``extension.yaml`` file
        staging_dir: Scratch directory for in-flight files
        dist_dir: Output directory for validated or uploaded archives
        key_path: Developer private key
        certificate_path: Developer certificate
        key_password: Passphrase of the developer key
        registry: Registry client, or None for local-only builds
        version_ceiling: Remote version count that triggers eviction
        retry_delay: Seconds between quota retries
        max_attempts: Upload attempts before giving up on the quota
        sdk_command: External SDK used for Python extensions
        sdk_python_path: Interpreter for the SDK environment
        sdk_extra_platform: Additional platform for SDK builds
    """

    project_root: Path
    extension_dir: Path
    manifest_path: Path
    staging_dir: Path
    dist_dir: Path
    key_path: Path
    certificate_path: Path
    key_password: Optional[str] = None
    registry: Optional[RegistryClient] = None
    version_ceiling: int = DEFAULT_VERSION_CEILING
    retry_delay: float = DEFAULT_RETRY_DELAY
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    sdk_command: str = 'dt-sdk'
    sdk_python_path: Optional[Path] = None
    sdk_extra_platform: Optional[str] = None

    @classmethod
    def for_project(
            cls,
            project_root: Union[str, Path],
            registry: Optional[RegistryClient] = None,
            **kwargs: Any,
    ) -> BuildContext:
        """Context with the default layout under ``project_root``."""
        root = Path(project_root)
        extension_dir = root / 'extension'
        values = dict(
            project_root=root,
            extension_dir=extension_dir,
            manifest_path=extension_dir / 'extension.yaml',
            staging_dir=root / '.extforge' / 'staging',
            dist_dir=root / 'dist',
            key_path=root / 'certificates' / 'developer.key',
            certificate_path=root / 'certificates' / 'developer.pem',
            registry=registry,
        )
        values.update(kwargs)
        return cls(**values)

    @classmethod
    def from_config(cls, config: Any, project_root: Optional[Union[str, Path]] = None) -> BuildContext:
        """Build a context from an initialized :class:`ConfigManager`.

        Args:
            config: Configuration manager
            project_root: Overrides ``project.root``

        Raises:
            ConfigurationError: If a value is unusable
        """
        root = Path(project_root or config.get('project.root', '.')).resolve()

        def resolve(key: str, default: str) -> Path:
            value = config.get(key) or default
            path = Path(value).expanduser()
            return path if path.is_absolute() else root / path

        extension_dir = resolve('project.extension_dir', 'extension')
        manifest = Path(config.get('project.manifest') or 'extension.yaml')
        manifest_path = manifest if manifest.is_absolute() else extension_dir / manifest

        registry: Optional[RegistryClient] = None
        url = config.get('registry.url') or ''
        if url:
            token = config.get('registry.token') or ''
            if not token:
                raise ConfigurationError(
                    'registry.token is required when registry.url is set',
                    config_key='registry.token',
                )
            registry = HttpRegistryClient(
                url=url,
                token=token,
                timeout=float(config.get('registry.timeout', 30.0)),
                verify_ssl=bool(config.get('registry.verify_ssl', True)),
            )

        python_path = config.get('sdk.python_path')
        return cls(
            project_root=root,
            extension_dir=extension_dir,
            manifest_path=manifest_path,
            staging_dir=resolve('project.staging_dir', '.extforge/staging'),
            dist_dir=resolve('project.dist_dir', 'dist'),
            key_path=resolve('credentials.developer_key', 'certificates/developer.key'),
            certificate_path=resolve('credentials.developer_certificate', 'certificates/developer.pem'),
            key_password=config.get('credentials.key_password'),
            registry=registry,
            version_ceiling=int(config.get('upload.version_ceiling', DEFAULT_VERSION_CEILING)),
            retry_delay=float(config.get('upload.retry_delay', DEFAULT_RETRY_DELAY)),
            max_attempts=int(config.get('upload.max_attempts', DEFAULT_MAX_ATTEMPTS)),
            sdk_command=config.get('sdk.command') or 'dt-sdk',
            sdk_python_path=Path(python_path) if python_path else None,
            sdk_extra_platform=config.get('sdk.extra_platform'),
        )

    def close(self) -> None:
        if self.registry is not None:
            self.registry.close()
