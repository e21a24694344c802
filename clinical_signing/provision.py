"""Provision the certificate container into the configured blob store.

The container is stored under the fixed object id the loader reads
(CS_CONTAINER_OBJECT), replacing any previous upload. Structurally invalid
files are refused before anything is written; with `check_password` the
container must also unlock.
"""

from __future__ import annotations

import logging
from typing import Optional

from .config import LOGGER_NAME, SigningConfig, configure_logging
from .errors import SigningCoreError
from .loader import BlobStore, build_blob_store
from .unlocker import UnlockedKey, inspect_container, unlock_container

logger = logging.getLogger(LOGGER_NAME)


def provision_container(
    store: BlobStore,
    object_id: str,
    data: bytes,
    *,
    check_password: Optional[str] = None,
) -> Optional[UnlockedKey]:
    """Validate `data` and upload it under `object_id`.

    Returns the unlocked key when `check_password` was given, so the caller
    can show which certificate was provisioned. Raises InvalidPassword,
    KeyNotFound or ContainerUnavailable; nothing is uploaded on failure.
    """
    inspect_container(data)
    key = unlock_container(data, check_password) if check_password is not None else None
    store.upload(object_id, data)
    logger.info("Certificate container provisioned as %r", object_id)
    return key


def main(argv=None):
    """
    Entry point for the clinical-signing-provision CLI.

    Usage:
        clinical-signing-provision cert.pfx            # upload to CS_CONTAINER_OBJECT
        clinical-signing-provision cert.pfx --check    # ask for the password and test it first
    """
    import argparse
    import getpass

    parser = argparse.ArgumentParser(description="Upload the signing certificate container to the blob store")
    parser.add_argument("path", help="PKCS#12 (.pfx/.p12) file")
    parser.add_argument("--object-id", default=None, help="Object id (default: env CS_CONTAINER_OBJECT)")
    parser.add_argument("--check", action="store_true", help="Prompt for the password and verify the key unlocks")
    args = parser.parse_args(argv)

    configure_logging()
    config = SigningConfig.from_env()
    object_id = args.object_id or config.container_object

    with open(args.path, "rb") as f:
        data = f.read()

    password = getpass.getpass("Certificate password: ") if args.check else None
    try:
        key = provision_container(build_blob_store(config), object_id, data, check_password=password)
    except SigningCoreError as e:
        print(f"ERROR: {e.user_message} ({e.code})")
        return 1

    if key is not None:
        print(f"OK: {object_id} (subject={key.subject_common_name}, key_id={key.key_id[:16]})")
    else:
        print(f"OK: {object_id}")
    return 0


if __name__ == "__main__":
    import sys
    sys.exit(main() or 0)
