"""Reading and writing flat JSON message catalogs."""
import json
import logging
import os
import stat
import tempfile
from typing import Dict

import jsonschema

logger = logging.getLogger(__name__)

# A catalog is a flat JSON object whose values are all strings.
CATALOG_SCHEMA = {
    "type": "object",
    "additionalProperties": {"type": "string"}
}


class CatalogError(Exception):
    """Base class for catalog read/write problems."""


class CatalogFormatError(CatalogError):
    """Raised when a catalog file is not a flat JSON object of strings."""


def load_catalog(file_path: str) -> Dict[str, str]:
    """
    Load a locale file into an ordered key -> string mapping.

    Args:
        file_path: Path to the ``.json`` catalog.

    Returns:
        The catalog, in file order.

    Raises:
        OSError: If the file cannot be read.
        CatalogFormatError: If the content is not valid JSON or not a flat object of strings.
    """
    with open(file_path, 'r', encoding='utf-8') as f:
        content = f.read()

    try:
        catalog = json.loads(content)
    except json.JSONDecodeError as json_exc:
        raise CatalogFormatError(f"Invalid JSON in '{file_path}': {json_exc}") from json_exc

    try:
        jsonschema.validate(instance=catalog, schema=CATALOG_SCHEMA)
    except jsonschema.ValidationError as schema_exc:
        raise CatalogFormatError(
            f"'{file_path}' is not a flat object of strings: {schema_exc.message}"
        ) from schema_exc

    logger.debug("Loaded %d key(s) from '%s'.", len(catalog), file_path)
    return catalog


def load_catalog_if_exists(file_path: str) -> Dict[str, str]:
    """Like ``load_catalog``, but a missing file is an empty catalog."""
    if not os.path.exists(file_path):
        return {}
    return load_catalog(file_path)


def _target_mode(file_path: str) -> int:
    """Keep an existing file's permissions; new files get the usual umask-based mode."""
    try:
        return stat.S_IMODE(os.stat(file_path).st_mode)
    except FileNotFoundError:
        umask = os.umask(0)
        os.umask(umask)
        return 0o666 & ~umask


def write_catalog(file_path: str, catalog: Dict[str, str]) -> None:
    """
    Write a catalog to disk, creating the locale directory if needed.

    The content is written to a temporary file in the same directory and then
    moved into place, so a failed write never leaves a truncated catalog.
    """
    dir_path = os.path.dirname(file_path) or '.'
    os.makedirs(dir_path, exist_ok=True)

    temp_file_path = None
    try:
        with tempfile.NamedTemporaryFile(
            mode='w', delete=False, dir=dir_path, suffix='.tmp', encoding='utf-8'
        ) as temp_f:
            temp_file_path = temp_f.name
            json.dump(catalog, temp_f, ensure_ascii=False, indent=2)
            temp_f.write('\n')
        os.chmod(temp_file_path, _target_mode(file_path))
        os.replace(temp_file_path, file_path)
        temp_file_path = None
    finally:
        if temp_file_path and os.path.exists(temp_file_path):
            try:
                os.remove(temp_file_path)
            except OSError as _e:
                logger.warning("Could not delete temporary catalog file '%s': %s", temp_file_path, _e)

    logger.debug("Wrote %d key(s) to '%s'.", len(catalog), file_path)
