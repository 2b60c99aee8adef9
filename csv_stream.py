from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from empty_rows import EmptyRowConfig, EmptyRowDetector, EmptyRowStats

MAX_PHYSICAL_LINES = 10000
READ_CHUNK_BYTES = 64 * 1024

PathLike = Union[str, os.PathLike]


def parse_csv_line(line: str, delimiter: str = ",") -> List[str]:
    """Split one CSV line into fields.

    Quotes toggle quoted mode and are not part of the value; a doubled quote
    inside quoted mode yields one literal quote. Fields are trimmed. An
    unterminated quote keeps the rest of the line in the last field.
    """
    fields: List[str] = []
    current: List[str] = []
    in_quotes = False
    index = 0
    length = len(line)
    while index < length:
        char = line[index]
        if char == '"':
            if in_quotes and index + 1 < length and line[index + 1] == '"':
                current.append('"')
                index += 2
                continue
            in_quotes = not in_quotes
        elif char == delimiter and not in_quotes:
            fields.append("".join(current).strip())
            current = []
        else:
            current.append(char)
        index += 1
    fields.append("".join(current).strip())
    return fields


def compute_checksum(path: PathLike, chunk_size: int = READ_CHUNK_BYTES) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        while True:
            chunk = handle.read(chunk_size)
            if not chunk:
                break
            digest.update(chunk)
    return digest.hexdigest()


@dataclass
class ParseResult:
    valid_rows: List[Dict[str, str]]
    empty_row_stats: EmptyRowStats
    total_rows_parsed: int
    headers: List[str] = field(default_factory=list)
    row_numbers: List[int] = field(default_factory=list)
    truncated: bool = False

    @property
    def actual_data_rows(self) -> int:
        return len(self.valid_rows)

    def numbered_rows(self) -> List[Tuple[int, Dict[str, str]]]:
        return list(zip(self.row_numbers, self.valid_rows))


class CsvStreamParser:
    def __init__(
        self,
        *,
        delimiter: str = ",",
        encoding: str = "utf-8-sig",
        logger: Optional[Any] = None,
        max_lines: int = MAX_PHYSICAL_LINES,
    ) -> None:
        self._delimiter = delimiter
        self._encoding = encoding
        self._logger = logger
        self._max_lines = max_lines
        self.truncated = False
        self.headers: List[str] = []

    def checksum(self, path: PathLike) -> str:
        return compute_checksum(path)

    def iter_lines(self, path: PathLike) -> Iterator[str]:
        """Yield physical lines without their terminators, reading in bounded chunks."""
        self.truncated = False
        buffer = ""
        line_count = 0
        with open(path, "r", encoding=self._encoding, errors="replace", newline="") as handle:
            while True:
                chunk = handle.read(READ_CHUNK_BYTES)
                if not chunk:
                    break
                buffer += chunk
                lines = buffer.split("\n")
                buffer = lines.pop()
                for line in lines:
                    line_count += 1
                    if line_count > self._max_lines:
                        self._warn_truncated()
                        return
                    yield line.rstrip("\r")
        if buffer:
            line_count += 1
            if line_count > self._max_lines:
                self._warn_truncated()
                return
            yield buffer.rstrip("\r")

    def iter_rows(self, path: PathLike) -> Iterator[Tuple[int, List[str], Dict[str, str]]]:
        """Yield ``(row_number, headers, sparse_row)`` for every physical data line.

        Row numbers are 1-based over all lines after the header, blank ones
        included. Only non-empty cells are kept in the row mapping.
        """
        headers: Optional[List[str]] = None
        self.headers = []
        row_number = 0
        for line in self.iter_lines(path):
            if headers is None:
                if not line.strip():
                    continue
                headers = parse_csv_line(line, self._delimiter)
                self.headers = headers
                continue
            row_number += 1
            if not line.strip():
                yield row_number, headers, {}
                continue
            values = parse_csv_line(line, self._delimiter)
            row: Dict[str, str] = {}
            for position, header in enumerate(headers):
                if not header or position >= len(values):
                    continue
                value = values[position]
                if value != "":
                    row[header] = value
            yield row_number, headers, row

    def read_headers(self, path: PathLike) -> List[str]:
        for line in self.iter_lines(path):
            if line.strip():
                return parse_csv_line(line, self._delimiter)
        return []

    def parse_with_filtering(
        self,
        path: PathLike,
        config: Optional[EmptyRowConfig] = None,
        *,
        detector: Optional[EmptyRowDetector] = None,
    ) -> ParseResult:
        detector = detector or EmptyRowDetector(config)
        detector.reset_stats()
        valid_rows: List[Dict[str, str]] = []
        row_numbers: List[int] = []
        total_rows = 0
        for row_number, _headers, row in self.iter_rows(path):
            total_rows = row_number
            if detector.is_empty_row(row, row_number):
                continue
            valid_rows.append(row)
            row_numbers.append(row_number)
        stats = detector.get_stats()
        if self._logger:
            self._logger.info(
                "Parsed %s rows: %s with data, %s empty.",
                total_rows,
                len(valid_rows),
                stats.total_empty_rows,
            )
        return ParseResult(
            valid_rows=valid_rows,
            empty_row_stats=stats,
            total_rows_parsed=total_rows,
            headers=list(self.headers),
            row_numbers=row_numbers,
            truncated=self.truncated,
        )

    def _warn_truncated(self) -> None:
        self.truncated = True
        if self._logger:
            self._logger.warning(
                "CSV parsing stopped after %s lines; remaining lines ignored.",
                self._max_lines,
            )
