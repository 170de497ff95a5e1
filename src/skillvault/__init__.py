from ._version import __version__
from .bundle import BundleResult, UnpackResult, pack, unpack
from .client import Metadata, RegistryClient
from .errors import (
    ConfirmationRequiredError,
    DependencyError,
    FileSystemError,
    NetworkError,
    SkillvaultError,
    ValidationError,
)
from .installer import Installer, InstallResult
from .resolver import DependencyNode, DependencyTree, ResolverOptions, resolve
from .transfer import ContentTransfer

__all__ = [
    "__version__",
    "BundleResult",
    "ConfirmationRequiredError",
    "ContentTransfer",
    "DependencyError",
    "DependencyNode",
    "DependencyTree",
    "FileSystemError",
    "InstallResult",
    "Installer",
    "Metadata",
    "NetworkError",
    "RegistryClient",
    "ResolverOptions",
    "SkillvaultError",
    "UnpackResult",
    "ValidationError",
    "pack",
    "resolve",
    "unpack",
]
