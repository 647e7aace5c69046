#!/usr/bin/env python3
"""
Salesforce -> HubSpot Migration Tool

Turns a Salesforce data export into HubSpot import files, renames exported
attachments, and uploads files to HubSpot. Salesforce IDs are mapped to
HubSpot Record IDs through the mapper CSVs exported from HubSpot after the
object imports (company-mapper.csv, contact-mapper.csv, deal-mapper.csv).

Usage:
    python sf_to_hubspot.py --activities
    python sf_to_hubspot.py --task-emails --max-chunk-mb 250
    python sf_to_hubspot.py --classic-notes --export-dir ../CSV --maps-dir ./maps
    python sf_to_hubspot.py --rename-attachments
    python sf_to_hubspot.py --manifest
    python sf_to_hubspot.py --import-files --dry-run
"""

import argparse
import sys

from hubspot_files import run_import_files
from migration_config import (DEFAULT_API_DELAY, DEFAULT_MAX_CHUNK_MB, MigrationConfig,
                              require_hubspot_token, setup_logging)
from sf_identity import DEFAULT_MAPPING_SOURCES, IdentityIndex
from sf_pipelines import (PrimaryInputMissing, run_activities, run_classic_notes, run_enhanced_notes,
                          run_file_manifest, run_rename_attachments, run_rename_content_versions,
                          run_task_emails)

# Pipelines that need the Salesforce -> HubSpot ID index
INDEXED_MODES = {
    'activities': run_activities,
    'task_emails': run_task_emails,
    'classic_notes': run_classic_notes,
    'enhanced_notes': run_enhanced_notes,
    'manifest': run_file_manifest,
}

FILE_MODES = {
    'rename_attachments': run_rename_attachments,
    'rename_content_versions': run_rename_content_versions,
}

# Exit status when a partition could not be written or files failed
EXIT_PARTIAL_FAILURE = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Salesforce -> HubSpot Migration Tool',
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    # Mode selection (mutually exclusive)
    mode_group = parser.add_mutually_exclusive_group(required=True)
    mode_group.add_argument('--activities', action='store_true',
                            help='Convert Event.csv into call/meeting/email engagement imports')
    mode_group.add_argument('--task-emails', action='store_true',
                            help='Convert email Tasks (with EmailMessage bodies) into email engagement imports')
    mode_group.add_argument('--classic-notes', action='store_true',
                            help='Convert Note.csv into note imports')
    mode_group.add_argument('--enhanced-notes', action='store_true',
                            help='Convert ContentVersion SNOTE files into note imports')
    mode_group.add_argument('--manifest', action='store_true',
                            help='Write JSON upload manifests for Attachments and ContentVersion files')
    mode_group.add_argument('--rename-attachments', action='store_true',
                            help='Rename exported Attachment files to "<id> -- <name>.<ext>"')
    mode_group.add_argument('--rename-content-versions', action='store_true',
                            help='Rename exported ContentVersion files to "<id> -- <title>.<ext>"')
    mode_group.add_argument('--import-files', action='store_true',
                            help='Upload manifest files to HubSpot and attach them to their records')

    parser.add_argument('--export-dir', type=str, default=None,
                        help='Folder with the Salesforce CSV export (default: $SF_EXPORT_DIR or ../CSV)')
    parser.add_argument('--maps-dir', type=str, default=None,
                        help='Folder with HubSpot mapper CSVs (default: $SF_MAPS_DIR or ./maps)')
    parser.add_argument('--output-dir', type=str, default=None,
                        help='Where import files and manifests are written/read (default: $SF_OUTPUT_DIR or ./out)')
    parser.add_argument('--attachments-dir', type=str, default=None,
                        help='Folder with exported Attachment files (default: $SF_ATTACHMENTS_DIR or ../Attachments)')
    parser.add_argument('--content-version-dir', type=str, default=None,
                        help='Folder with exported ContentVersion files (default: $SF_CONTENT_VERSION_DIR or ../ContentVersion)')

    parser.add_argument('--max-chunk-mb', type=float, default=None,
                        help=f'Maximum size of each import file chunk in MB (default: $SF_MAX_CHUNK_MB or {DEFAULT_MAX_CHUNK_MB})')
    empty_group = parser.add_mutually_exclusive_group()
    empty_group.add_argument('--skip-empty-bodies', dest='skip_empty_bodies', action='store_true', default=None,
                             help='Skip task emails with no body (default)')
    empty_group.add_argument('--keep-empty-bodies', dest='skip_empty_bodies', action='store_false',
                             help='Keep task emails even when no body was found')
    parser.set_defaults(skip_empty_bodies=None)

    parser.add_argument('--dry-run', action='store_true',
                        help='Do not upload or attach anything (--import-files mode)')
    parser.add_argument('--api-delay', type=float, default=DEFAULT_API_DELAY,
                        help=f'Seconds to wait between files (--import-files mode, default: {DEFAULT_API_DELAY})')

    parser.add_argument('--log-level', type=str, default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        help='Logging level (default: INFO)')
    return parser


def main(argv=None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(args.log_level)

    try:
        config = MigrationConfig.from_args(args)
    except ValueError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    try:
        if args.import_files:
            token = None if config.dry_run else require_hubspot_token()
            summary = run_import_files(config, token)
        else:
            mode = next(name for name in list(INDEXED_MODES) + list(FILE_MODES) if getattr(args, name))
            if mode in INDEXED_MODES:
                index = IdentityIndex.load(DEFAULT_MAPPING_SOURCES, config.maps_dir)
                summary = INDEXED_MODES[mode](config, index)
            else:
                summary = FILE_MODES[mode](config)
    except PrimaryInputMissing as e:
        print(f"ERROR: Cannot open input {e}", file=sys.stderr)
        return 1

    summary.print_summary()
    return EXIT_PARTIAL_FAILURE if summary.failed else 0


if __name__ == '__main__':
    sys.exit(main())
