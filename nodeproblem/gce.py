"""GCE instance metadata needed to label exported metrics."""

from __future__ import annotations

import logging
import os
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Callable, Optional

__all__ = ["Metadata", "MetadataError", "fetch_metadata"]

logger = logging.getLogger(__name__)

_DEFAULT_METADATA_HOST = "169.254.169.254"
_METADATA_HOST_ENV = "GCE_METADATA_HOST"


class MetadataError(Exception):
    """Raised when the metadata server cannot supply a value."""


def fetch_metadata(path: str, timeout: float = 5.0) -> str:
    """Fetch one value from the GCE metadata server.

    The host can be overridden with the GCE_METADATA_HOST environment variable.
    """
    host = os.environ.get(_METADATA_HOST_ENV, _DEFAULT_METADATA_HOST)
    url = f"http://{host}/computeMetadata/v1/{path.lstrip('/')}"
    request = urllib.request.Request(url, headers={"Metadata-Flavor": "Google"})
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            body = response.read()
    except (urllib.error.URLError, OSError) as exc:
        raise MetadataError(f"failed to fetch metadata {path!r}: {exc}") from exc
    return body.decode("utf-8", errors="replace").strip()


@dataclass
class Metadata:
    """Identity of the GCE instance the detector runs on."""

    project_id: str = ""
    zone: str = ""
    instance_id: str = ""
    instance_name: str = ""

    def has_missing_field(self) -> bool:
        """Return True if any field is still empty."""
        return not all((self.project_id, self.zone, self.instance_id, self.instance_name))

    def populate_from_gce(self, fetch: Optional[Callable[[str], str]] = None) -> None:
        """Fill every empty field from the metadata server.

        ``fetch`` takes a metadata path and returns its value; it defaults to
        :func:`fetch_metadata`. Errors from it propagate unchanged.
        """
        fetch = fetch or fetch_metadata
        logger.info("Fetching GCE metadata from metadata server")
        if not self.project_id:
            self.project_id = fetch("project/project-id")
        if not self.zone:
            # The server answers with "projects/<number>/zones/<zone>".
            self.zone = fetch("instance/zone").rsplit("/", 1)[-1]
        if not self.instance_id:
            self.instance_id = fetch("instance/id")
        if not self.instance_name:
            self.instance_name = fetch("instance/name")