"""Readers for uploaded delimited-text tables."""

import base64
import binascii
import contextlib
import logging
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional, Union

import pandas as pd

from rnaseq_dashboard.errors import UnreadableFile, UnsupportedFormat


logger = logging.getLogger(__name__)

DELIMITERS = {
    'csv': ',',
    'tsv': '\t',
    'txt': '\t',
}


def normalize_extension(extension: str) -> str:
    return extension.strip().lstrip('.').lower()


def delimiter_for(extension: str, filename: Optional[str] = None) -> str:
    """Return the delimiter for an extension, or raise ``UnsupportedFormat``."""
    ext = normalize_extension(extension)
    try:
        return DELIMITERS[ext]
    except KeyError:
        raise UnsupportedFormat(ext, filename) from None


def read_table(
    filepath: Union[str, Path],
    extension: Optional[str] = None
) -> pd.DataFrame:
    """
    Read a delimited-text table whose first column holds the row identifiers.

    Args:
        filepath: Path to the file
        extension: Declared extension (taken from the path if None)

    Returns:
        DataFrame indexed by the first column

    Raises:
        UnsupportedFormat: extension is not csv, tsv or txt
        UnreadableFile: the file cannot be opened or parsed
    """
    filepath = Path(filepath)
    if extension is None:
        extension = filepath.suffix
    sep = delimiter_for(extension, filepath.name)

    try:
        df = pd.read_csv(filepath, sep=sep, index_col=0)
        # pandas renames repeated headers ("S1", "S1.1"); keep the originals
        header = pd.read_csv(filepath, sep=sep, header=None, nrows=1, dtype=str)
    except (OSError, UnicodeDecodeError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise UnreadableFile(filepath.name, str(e)) from e

    raw_columns = header.iloc[0].tolist()[1:]
    if len(raw_columns) == len(df.columns):
        df.columns = raw_columns

    # Clean up identifiers (remove whitespace)
    df.index = df.index.astype(str).str.strip()
    df.columns = df.columns.astype(str).str.strip()

    logger.debug(f"Read {filepath.name}: {df.shape[0]} rows x {df.shape[1]} columns")
    return df


@dataclass(frozen=True)
class UploadedFile:
    """A file received from the browser, held in memory until it is read."""

    filename: str
    content: bytes

    @classmethod
    def from_contents(cls, contents: str, filename: str) -> "UploadedFile":
        """Decode a ``data:<type>;base64,<payload>`` string from ``dcc.Upload``."""
        try:
            content_type, content_string = contents.split(',', 1)
            decoded = base64.b64decode(content_string)
        except (ValueError, binascii.Error) as e:
            raise UnreadableFile(filename, f"malformed upload payload ({e})") from e
        return cls(filename=filename, content=decoded)

    @property
    def extension(self) -> str:
        return normalize_extension(Path(self.filename).suffix)

    @property
    def size(self) -> int:
        return len(self.content)

    @contextlib.contextmanager
    def materialize(self, directory: Optional[Path] = None) -> Iterator[Path]:
        """Write the upload to a temporary directory that is removed on exit."""
        with tempfile.TemporaryDirectory(prefix="rnaseq-upload-", dir=directory) as tmp:
            path = Path(tmp) / Path(self.filename).name
            path.write_bytes(self.content)
            yield path


def read_upload(upload: UploadedFile, directory: Optional[Path] = None) -> pd.DataFrame:
    """Read an uploaded file through scoped temporary storage."""
    # Reject unknown formats before touching the disk
    delimiter_for(upload.extension, upload.filename)
    with upload.materialize(directory) as path:
        return read_table(path, upload.extension)
