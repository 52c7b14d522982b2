"""
Archive unwrapping for statement exports.

Banks often mail statements as (optionally password-protected) ZIP files.
Adapters hand the artifact bytes here and receive the statement member.
"""

import io
import logging
import zipfile
import zlib
from typing import Optional

from ..errors import ParseError, SourceAccessError

logger = logging.getLogger(__name__)

ZIP_MAGIC = b"PK\x03\x04"

# General purpose flag bit 0: member is encrypted
ENCRYPTED_FLAG = 0x1


def is_zip(data: bytes) -> bool:
    return data[:4] == ZIP_MAGIC


def read_archive_member(
    data: bytes,
    suffixes: tuple[str, ...],
    password: Optional[str] = None,
) -> tuple[str, bytes]:
    """
    Read the first member whose name ends with one of ``suffixes``.

    Args:
        data: ZIP archive bytes
        suffixes: Accepted member suffixes, lowercase (e.g. (".pdf",))
        password: Archive password, if the member is encrypted

    Returns:
        (member name, member bytes)

    Raises:
        SourceAccessError: Corrupt archive, missing or wrong password
        ParseError: No member with an accepted suffix
    """
    try:
        archive = zipfile.ZipFile(io.BytesIO(data))
    except zipfile.BadZipFile as e:
        raise SourceAccessError(f"Corrupt archive: {e}") from e

    with archive:
        members = sorted(
            (
                info
                for info in archive.infolist()
                if not info.is_dir() and info.filename.lower().endswith(suffixes)
            ),
            key=lambda info: info.filename,
        )
        if not members:
            raise ParseError(
                f"Archive contains no {'/'.join(suffixes)} file",
                detail={"members": archive.namelist()},
            )

        member = members[0]
        if len(members) > 1:
            logger.info(f"Archive has {len(members)} candidate members, using {member.filename}")

        encrypted = bool(member.flag_bits & ENCRYPTED_FLAG)
        if encrypted and not password:
            raise SourceAccessError(f"Archive member {member.filename} is password protected")

        pwd = password.encode("utf-8") if (encrypted and password) else None
        try:
            return member.filename, archive.read(member, pwd=pwd)
        except RuntimeError as e:
            # zipfile signals a failed password check with RuntimeError
            raise SourceAccessError(f"Bad password for {member.filename}") from e
        except (zipfile.BadZipFile, zlib.error) as e:
            if encrypted:
                raise SourceAccessError(f"Bad password for {member.filename}") from e
            raise SourceAccessError(f"Corrupt archive member {member.filename}: {e}") from e
        except NotImplementedError as e:
            raise SourceAccessError(
                f"Unsupported compression or encryption for {member.filename}: {e}"
            ) from e


def unwrap(
    data: bytes,
    file_name: str,
    suffixes: tuple[str, ...],
    password: Optional[str] = None,
) -> tuple[str, bytes]:
    """Return the statement bytes, reading through a ZIP wrapper when present."""
    if is_zip(data) and not file_name.lower().endswith((".xlsx", ".xlsm")):
        return read_archive_member(data, suffixes, password)
    return file_name, data
