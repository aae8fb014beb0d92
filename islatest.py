#!/usr/bin/env python3
"""
Container Image Freshness Check

This script checks every container on the local Docker host and reports
whether its image is the one currently published under the 'latest' tag on
Docker Hub or GitHub Container Registry.
"""

__version__ = "1.0.0"

import json
import socket as _socket
import sys
import time
import logging
from typing import Dict, List, Optional, Any
from pathlib import Path
import argparse
import os
import requests
import jsonschema
from urllib3.connection import HTTPConnection as _HTTPConnection
from urllib3.connectionpool import HTTPConnectionPool as _HTTPConnectionPool
from requests.adapters import HTTPAdapter as _HTTPAdapter

from freshness import CheckResult, ContainerObservation, FreshnessChecker, RunContext, Verdict
from image_ref import parse_image_reference
from notify import send_notifications
from registries import REQUEST_TIMEOUT


# Constants
DOCKER_SOCKET_PATH = os.environ.get('DOCKER_SOCKET', '/var/run/docker.sock')

# Configuration schema
CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "ghcr_token": {"type": "string"},
        "output": {"type": "string"},
        "exclude": {
            "type": "array",
            "items": {"type": "string"}
        },
        "notifications": {
            "type": "object",
            "properties": {
                "ntfy": {
                    "type": "object",
                    "properties": {
                        "url": {"type": "string"},
                        "priority": {"type": "string"},
                        "headers": {"type": "object"}
                    },
                    "required": ["url"]
                },
                "webhook": {
                    "type": "object",
                    "properties": {
                        "url": {"type": "string"},
                        "method": {"type": "string", "enum": ["POST", "PUT", "post", "put"]},
                        "headers": {"type": "object"},
                        "body_template": {"type": "string"}
                    },
                    "required": ["url"]
                }
            }
        }
    }
}


# ---------------------------------------------------------------------------
# Docker Engine socket client
# ---------------------------------------------------------------------------

class _UnixSocketConnection(_HTTPConnection):
    """HTTPConnection that connects via a Unix domain socket."""

    def __init__(self, socket_path: str):
        super().__init__('localhost')
        self._socket_path = socket_path

    def connect(self):
        sock = _socket.socket(_socket.AF_UNIX, _socket.SOCK_STREAM)
        sock.connect(self._socket_path)
        self.sock = sock


class _UnixSocketPool(_HTTPConnectionPool):
    """Connection pool backed by a Unix domain socket."""

    def __init__(self, socket_path: str):
        super().__init__('localhost')
        self._socket_path = socket_path

    def _new_conn(self):
        return _UnixSocketConnection(self._socket_path)


class _UnixSocketAdapter(_HTTPAdapter):
    """requests adapter that routes all requests through a Unix socket."""

    def __init__(self, socket_path: str):
        self._socket_path = socket_path
        super().__init__()

    def get_connection(self, url: str, proxies=None):
        return _UnixSocketPool(self._socket_path)

    # Needed in requests >= 2.32 / urllib3 >= 2.x
    def get_connection_with_tls_context(self, request, verify, proxies=None, cert=None):
        return _UnixSocketPool(self._socket_path)


class DockerClient:
    """Read-only Docker Engine API v1.41 client over the Unix socket."""

    def __init__(self, socket_path: str = DOCKER_SOCKET_PATH):
        self._session = requests.Session()
        self._session.mount('http+unix://', _UnixSocketAdapter(socket_path))

    def _url(self, path: str) -> str:
        return f'http+unix://docker{path}'

    def get(self, path: str, **kwargs) -> requests.Response:
        r = self._session.get(self._url(path), timeout=REQUEST_TIMEOUT, **kwargs)
        r.raise_for_status()
        return r

    def list_containers(self) -> List[Dict[str, Any]]:
        """All containers, running or stopped, in engine order."""
        return self.get('/containers/json', params={'all': '1'}).json()

    def inspect_image(self, image_id: str) -> Dict[str, Any]:
        return self.get(f'/images/{image_id}/json').json()


# ---------------------------------------------------------------------------

def _pick_repo_digest(repo_digests: List[str], image_path: str) -> str:
    """Return the digest of the RepoDigests entry for image_path.

    Falls back to the first entry when none names the same repository, and
    to '' for images that never came from a registry.
    """
    digests = []
    for repo_digest in repo_digests or []:
        repo, _, digest = repo_digest.partition('@')
        if not digest:
            continue
        if repo == image_path:
            return digest
        digests.append(digest)
    return digests[0] if digests else ''


class ImageFreshnessChecker:
    def __init__(self, config_file: Optional[str] = None, ghcr_token: Optional[str] = None,
                 output: Optional[str] = None, log_level: str = "INFO",
                 docker_client: Optional[DockerClient] = None):
        """
        Initialize the checker.

        Args:
            config_file: Optional path to JSON configuration file
            ghcr_token: GitHub token for GHCR lookups (overrides config)
            output: Path for JSON results (overrides config)
            log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
            docker_client: Docker Engine client, defaults to the local socket
        """
        self.logger = self._setup_logging(log_level)

        self.config_file = Path(config_file) if config_file else None
        self.config = self._load_config()

        self.ghcr_token = ghcr_token or self.config.get('ghcr_token')
        output = output or self.config.get('output')
        self.output_file = Path(output) if output else None
        self.exclude = set(self.config.get('exclude', []))

        self._docker = docker_client or DockerClient()

    def _setup_logging(self, level: str) -> logging.Logger:
        """Setup logging configuration."""
        root = logging.getLogger()
        root.setLevel(getattr(logging, level.upper()))

        if not root.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            root.addHandler(handler)

        return logging.getLogger('ImageFreshnessChecker')

    def _load_config(self) -> Dict[str, Any]:
        """Load and validate the optional configuration file."""
        if self.config_file is None:
            return {}

        try:
            with open(self.config_file, 'r') as f:
                config = json.load(f)

            jsonschema.validate(config, CONFIG_SCHEMA)
            return config

        except FileNotFoundError:
            self.logger.error(f"Config file {self.config_file} not found")
            raise
        except json.JSONDecodeError as e:
            self.logger.error(f"Error parsing config file: {e}")
            raise
        except jsonschema.ValidationError as e:
            self.logger.error(f"Configuration validation failed: {e}")
            raise

    def _observe_containers(self) -> List[ContainerObservation]:
        """Capture name, image, digest and platform of every container.

        Any Engine API failure here is fatal to the run.
        """
        observations = []
        for container in self._docker.list_containers():
            # API returns Names as a list with leading slashes, e.g. ["/mycontainer"]
            names = container.get('Names') or []
            name = names[0].lstrip('/') if names else container.get('Id', '')[:12]
            if name in self.exclude:
                self.logger.debug(f"Skipping excluded container {name}")
                continue

            image = container.get('Image', '')
            inspect = self._docker.inspect_image(container.get('ImageID') or image)
            path = parse_image_reference(image).path

            observations.append(ContainerObservation(
                container_name=name,
                image=image,
                recorded_digest=_pick_repo_digest(inspect.get('RepoDigests'), path),
                os=inspect.get('Os', ''),
                architecture=inspect.get('Architecture', ''),
                variant=inspect.get('Variant') or '',
            ))
        return observations

    def _save_results(self, results: List[CheckResult]):
        """Write results as JSON to the output file."""
        if self.output_file is None:
            return

        try:
            # Write to temp file first
            temp_file = self.output_file.with_suffix('.tmp')
            with open(temp_file, 'w') as f:
                json.dump([r.to_dict() for r in results], f, indent=2)

            # Atomic rename
            temp_file.replace(self.output_file)
            self.logger.info(f"Results written to {self.output_file}")

        except OSError as e:
            self.logger.error(f"Error writing results: {e}")
            raise

    def check_all(self, progress_callback=None) -> List[CheckResult]:
        """Check every container once and report the results.

        Args:
            progress_callback: Optional function(event_type, data) called for progress updates
        """
        try:
            observations = self._observe_containers()
        except requests.RequestException as e:
            self.logger.error(f"Unable to list containers: {e}")
            raise

        session = requests.Session()
        context = RunContext(session=session, ghcr_token=self.ghcr_token)
        checker = FreshnessChecker(context)
        total = len(observations)

        try:
            for idx, observation in enumerate(observations, 1):
                if progress_callback:
                    progress_callback('checking_container', {
                        'container': observation.container_name,
                        'image': observation.image,
                        'progress': idx,
                        'total': total
                    })

                result = checker.check(observation)

                if progress_callback:
                    progress_callback('checked_container', result.to_dict())
        finally:
            session.close()

        results = context.results
        self._save_results(results)
        send_notifications(self.config.get('notifications'), [r.to_dict() for r in results])

        # Summary
        counts = {v: sum(1 for r in results if r.verdict is v) for v in Verdict}
        self.logger.info(
            f"Checked {total} container(s): {counts[Verdict.YES]} latest, "
            f"{counts[Verdict.NO]} outdated, {counts[Verdict.UNKNOWN]} unknown"
        )

        return results


def main():
    parser = argparse.ArgumentParser(
        description='Check whether running containers use the latest image'
    )
    parser.add_argument(
        'config',
        nargs='?',
        default=os.environ.get('CONFIG_FILE'),
        help='Path to optional configuration JSON file (env: CONFIG_FILE)'
    )
    parser.add_argument(
        '--ghcr-token',
        default=os.environ.get('GHCR_TOKEN'),
        help='GitHub token used for ghcr.io images (env: GHCR_TOKEN)'
    )
    parser.add_argument(
        '--output',
        default=os.environ.get('OUTPUT_FILE'),
        help='Write results as JSON to this file (env: OUTPUT_FILE)'
    )
    parser.add_argument(
        '--daemon',
        action='store_true',
        default=os.environ.get('DAEMON', '').lower() == 'true',
        help='Run continuously, checking at intervals (env: DAEMON)'
    )
    parser.add_argument(
        '--interval',
        type=int,
        default=int(os.environ.get('CHECK_INTERVAL', '3600')),
        help='Check interval in seconds when running as daemon (env: CHECK_INTERVAL, default: 3600)'
    )
    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        default=os.environ.get('LOG_LEVEL', 'INFO'),
        help='Logging level (env: LOG_LEVEL, default: INFO)'
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    args = parser.parse_args()

    try:
        checker = ImageFreshnessChecker(
            args.config,
            args.ghcr_token,
            args.output,
            args.log_level
        )

        if args.daemon:
            checker.logger.info(f"Running in daemon mode, checking every {args.interval} seconds")
            while True:
                try:
                    checker.check_all()
                    checker.logger.info(f"Sleeping for {args.interval} seconds...")
                    time.sleep(args.interval)
                except KeyboardInterrupt:
                    checker.logger.info("Exiting...")
                    break
                except Exception as e:
                    checker.logger.error(f"Error during check: {e}")
                    time.sleep(args.interval)
        else:
            checker.check_all()

    except Exception as e:
        logging.error(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
