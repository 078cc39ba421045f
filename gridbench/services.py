from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

LOGGER = logging.getLogger("gridbench.services")


class ServiceResolutionError(Exception):
    """Raised when the services root cannot be enumerated."""


@dataclass(frozen=True)
class ServiceIdentity:
    """A deployable service, named after its directory."""

    name: str
    path: Path
    health_url: str
    discovery_key: str
    lifecycle_handle: str

    @classmethod
    def from_directory(cls, path: Path, health_url_template: str) -> "ServiceIdentity":
        name = path.name.lower()
        return cls(
            name=name,
            path=path,
            health_url=health_url_template.format(name=name),
            discovery_key=name,
            lifecycle_handle=name,
        )


def resolve_services(
    root: Path | str,
    health_url_template: str = "http://{name}.localhost/health",
) -> list[ServiceIdentity]:
    """Walk ``root`` and return one identity per nested directory.

    Every directory below ``root`` (at any depth, ``root`` excluded) is a
    candidate. Entries are visited in sorted order so a given filesystem
    snapshot always yields the same sequence.
    """

    root_path = Path(root).resolve()
    LOGGER.info("Searching for service directories in %s", root_path)
    if not root_path.is_dir():
        raise ServiceResolutionError(f"services root {root_path} is not a directory")

    errors: list[OSError] = []
    identities: list[ServiceIdentity] = []
    for current, dirnames, _ in os.walk(root_path, onerror=errors.append):
        dirnames.sort()
        for dirname in dirnames:
            path = Path(current) / dirname
            identity = ServiceIdentity.from_directory(path, health_url_template)
            LOGGER.info("Found service directory %s (%s)", path, identity.name)
            identities.append(identity)

    if errors:
        raise ServiceResolutionError(
            f"failed to walk {root_path}: {errors[0]}"
        ) from errors[0]
    return identities
