"""
Import Declaration Scanner.

Surfaces the packages a synced file imports. Only ES ``import ... from``
declarations are recognised; nothing is installed.
"""

import logging
import os
import re
from pathlib import Path
from typing import Dict, List, Literal, Optional, Union

from pydantic import BaseModel

from ..sync.paths import is_supported_extension, normalize_path

logger = logging.getLogger(__name__)

_CLAUSE = r'(?:(?:\*\s+as\s+\w+)|(?:\w+)|(?:\{[^}]*\}))'
NPM_IMPORT_PATTERN = re.compile(r'import\s+' + _CLAUSE + r'\s+from\s+[\'"]([^./][^\'"]+)[\'"]')
URL_IMPORT_PATTERN = re.compile(r'import\s+' + _CLAUSE + r'\s+from\s+[\'"](https?://[^\'"]+)[\'"]')
_URL_PACKAGE_PATTERN = re.compile(r'/(@?[^@/]+(?:/[^@/]+)?)')


class ImportInfo(BaseModel):
    """One detected import"""
    type: Literal["npm", "url"]
    name: str
    raw: str


def _package_name(specifier: str) -> str:
    parts = specifier.split('/')
    if specifier.startswith('@'):
        return '/'.join(parts[:2])
    return parts[0]


def extract_package_from_url(url: str) -> Optional[str]:
    """First path segment (two for scoped packages) of a URL import."""
    without_scheme = re.sub(r'^https?://[^/]+', '', url)
    match = _URL_PACKAGE_PATTERN.search(without_scheme)
    return match.group(1) if match else None


def extract_imports(code: str) -> List[ImportInfo]:
    """
    Extract npm and URL imports from source code.

    npm specifiers are reduced to their package name (``lodash/fp`` ->
    ``lodash``, ``@scope/pkg/sub`` -> ``@scope/pkg``). Each package is
    reported once, npm imports first.
    """
    imports: List[ImportInfo] = []
    seen = set()

    for match in NPM_IMPORT_PATTERN.finditer(code):
        specifier = match.group(1)
        if re.match(r'^https?:', specifier):
            continue
        name = _package_name(specifier)
        if name not in seen:
            seen.add(name)
            imports.append(ImportInfo(type="npm", name=name, raw=match.group(0)))

    for match in URL_IMPORT_PATTERN.finditer(code):
        name = extract_package_from_url(match.group(1))
        if name and name not in seen:
            seen.add(name)
            imports.append(ImportInfo(type="url", name=name, raw=match.group(0)))

    return imports


def scan_directory_imports(files_dir: Union[str, Path]) -> Dict[str, List[ImportInfo]]:
    """
    Scan every supported file under ``files_dir``.

    Returns:
        Relative file name -> imports, for files with at least one import
    """
    root = Path(files_dir)
    results: Dict[str, List[ImportInfo]] = {}

    if not root.is_dir():
        return results

    for current, dirs, names in os.walk(root):
        dirs[:] = sorted(d for d in dirs if not d.startswith('.'))
        for name in sorted(names):
            if name.startswith('.') or not is_supported_extension(name):
                continue
            path = Path(current) / name
            try:
                code = path.read_text(encoding='utf-8')
            except (OSError, UnicodeDecodeError) as e:
                logger.warning(f"Failed to scan {path}: {e}")
                continue

            found = extract_imports(code)
            if found:
                results[normalize_path(path.relative_to(root).as_posix())] = found

    return results
