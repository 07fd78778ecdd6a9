"""
Installed package manifest.

The manifest is a JSON document (manifest.json in the packages root)
recording what the hub has installed:

    {"packages": {"<name>": {"version": "...", "type": "...",
                             "installedAt": "...", "deploymentId": "..."}}}

Writes go to a temp file in the same directory which then replaces the
manifest, so a crash never leaves a half-written document. A manifest that
cannot be parsed is logged and treated as empty.
"""

import json
import logging
import os
import tempfile
import threading
from typing import Any, Dict, Optional

from edge_hub.models import utcnow


logger = logging.getLogger(__name__)


MANIFEST_FILENAME = 'manifest.json'


class PackageManifest:
    """Read/modify/write access to manifest.json."""

    def __init__(self, packages_path: str):
        self.packages_path = packages_path
        self.path = os.path.join(packages_path, MANIFEST_FILENAME)
        self._lock = threading.Lock()

    def load(self) -> Dict[str, Any]:
        """
        Read the manifest document.

        Returns:
            Dict with a 'packages' mapping (empty if missing or corrupt)
        """
        if not os.path.exists(self.path):
            return {'packages': {}}

        try:
            with open(self.path, 'r') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Manifest {self.path} unreadable, treating as empty: {e}")
            return {'packages': {}}

        if not isinstance(data, dict) or not isinstance(data.get('packages'), dict):
            logger.error(f"Manifest {self.path} has unexpected shape, treating as empty")
            return {'packages': {}}
        return data

    def save(self, data: Dict[str, Any]) -> None:
        """Atomically replace the manifest document."""
        os.makedirs(self.packages_path, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            prefix='.manifest-', suffix='.json', dir=self.packages_path,
        )
        try:
            with os.fdopen(fd, 'w') as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def get(self, package_name: str) -> Optional[Dict[str, Any]]:
        """Manifest entry for a package, or None if not installed."""
        return self.load()['packages'].get(package_name)

    def installed_packages(self) -> Dict[str, Dict[str, Any]]:
        return self.load()['packages']

    def record_install(
        self,
        package_name: str,
        version: str,
        package_type: str,
        deployment_id: str,
    ) -> Dict[str, Any]:
        """
        Record a successful install, replacing any previous entry.

        Returns:
            The stored entry
        """
        entry = {
            'version': version,
            'type': package_type,
            'installedAt': utcnow().isoformat() + 'Z',
            'deploymentId': deployment_id,
        }
        with self._lock:
            data = self.load()
            data['packages'][package_name] = entry
            self.save(data)

        logger.info(f"Manifest: {package_name} {version} installed")
        return entry

    def remove(self, package_name: str) -> bool:
        """
        Drop a package entry.

        Returns:
            True if an entry was removed
        """
        with self._lock:
            data = self.load()
            if data['packages'].pop(package_name, None) is None:
                return False
            self.save(data)

        logger.info(f"Manifest: {package_name} removed")
        return True
