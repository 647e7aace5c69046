"""
Run configuration for the Salesforce -> HubSpot migration.

Values come from command-line flags first, then environment variables (a .env
file is loaded with python-dotenv), then the defaults below.
"""

import logging
import os
import sys
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from hubspot_csv import DEFAULT_MAX_CHUNK_MB, HUBSPOT_IMPORT_LIMIT_MB, mb_to_bytes

# Default layout of an unpacked Salesforce export next to the tool
DEFAULT_EXPORT_DIR = '../CSV'
DEFAULT_MAPS_DIR = './maps'
DEFAULT_OUTPUT_DIR = './out'
DEFAULT_ATTACHMENTS_DIR = '../Attachments'
DEFAULT_CONTENT_VERSION_DIR = '../ContentVersion'

# Delay between HubSpot API calls per file (5 requests/second on starter tiers)
DEFAULT_API_DELAY = 0.2


def setup_logging(log_level: str = "INFO"):
    """Configure logging."""
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=numeric_level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


def env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == '':
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


class MigrationConfig:
    """Resolved settings shared by every pipeline in one run."""

    def __init__(self, export_dir=DEFAULT_EXPORT_DIR, maps_dir=DEFAULT_MAPS_DIR,
                 output_dir=DEFAULT_OUTPUT_DIR, attachments_dir=DEFAULT_ATTACHMENTS_DIR,
                 content_version_dir=DEFAULT_CONTENT_VERSION_DIR,
                 max_chunk_mb: float = DEFAULT_MAX_CHUNK_MB, skip_empty_bodies: bool = True,
                 dry_run: bool = False, api_delay: float = DEFAULT_API_DELAY):
        if max_chunk_mb <= 0:
            raise ValueError("max_chunk_mb must be positive")
        if max_chunk_mb > HUBSPOT_IMPORT_LIMIT_MB:
            logging.warning(f"max chunk size {max_chunk_mb}MB is above HubSpot's {HUBSPOT_IMPORT_LIMIT_MB}MB "
                            f"import limit; HubSpot may reject the files")

        self.export_dir = Path(export_dir)
        self.maps_dir = Path(maps_dir)
        self.output_dir = Path(output_dir)
        self.attachments_dir = Path(attachments_dir)
        self.content_version_dir = Path(content_version_dir)
        self.max_chunk_mb = max_chunk_mb
        self.max_chunk_bytes = mb_to_bytes(max_chunk_mb)
        self.skip_empty_bodies = skip_empty_bodies
        self.dry_run = dry_run
        self.api_delay = api_delay

    def export_file(self, name: str) -> Path:
        return self.export_dir / name

    @classmethod
    def from_args(cls, args) -> 'MigrationConfig':
        """Build from parsed argparse flags, falling back to SF_* environment variables."""
        load_dotenv()

        max_chunk_mb = args.max_chunk_mb
        if max_chunk_mb is None:
            max_chunk_mb = float(os.getenv('SF_MAX_CHUNK_MB', DEFAULT_MAX_CHUNK_MB))

        skip_empty_bodies = args.skip_empty_bodies
        if skip_empty_bodies is None:
            skip_empty_bodies = env_flag('SF_SKIP_EMPTY_BODIES', True)

        return cls(
            export_dir=args.export_dir or os.getenv('SF_EXPORT_DIR', DEFAULT_EXPORT_DIR),
            maps_dir=args.maps_dir or os.getenv('SF_MAPS_DIR', DEFAULT_MAPS_DIR),
            output_dir=args.output_dir or os.getenv('SF_OUTPUT_DIR', DEFAULT_OUTPUT_DIR),
            attachments_dir=args.attachments_dir or os.getenv('SF_ATTACHMENTS_DIR', DEFAULT_ATTACHMENTS_DIR),
            content_version_dir=args.content_version_dir or os.getenv('SF_CONTENT_VERSION_DIR',
                                                                      DEFAULT_CONTENT_VERSION_DIR),
            max_chunk_mb=max_chunk_mb,
            skip_empty_bodies=skip_empty_bodies,
            dry_run=args.dry_run,
            api_delay=args.api_delay,
        )


def load_hubspot_token() -> Optional[str]:
    """Load the HubSpot private app token from the environment or .env file."""
    load_dotenv()

    for env_var in ['HUBSPOT_API_KEY', 'ACCESS_TOKEN']:
        token = os.getenv(env_var)
        if token:
            return token
    return None


def require_hubspot_token() -> str:
    """
    Load the HubSpot token.

    Exits with error if token not found.
    """
    token = load_hubspot_token()
    if token:
        return token

    print("ERROR: HUBSPOT_API_KEY not found in environment or .env file.", file=sys.stderr)
    print("Please set HUBSPOT_API_KEY (or ACCESS_TOKEN) in your environment or .env file.", file=sys.stderr)
    sys.exit(1)
