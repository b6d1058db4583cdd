import csv
import math
import os
import re
import tempfile
from typing import List

from pypdf import PdfReader
from docx import Document as DocxDocument

SUPPORTED_EXTENSIONS = (".pdf", ".docx", ".csv", ".txt")

_ZERO_WIDTH = re.compile("\u200b")
_EXCESS_NEWLINES = re.compile(r"\n{3,}")
_EXCESS_SPACES = re.compile(r"[\t ]{2,}")


def clean_text(value: str) -> str:
    """
    Normalize whitespace and strip zero-width characters from extracted text.
    Paragraph breaks survive; runs of three or more newlines collapse to two.
    """
    value = _ZERO_WIDTH.sub("", value)
    value = value.replace("\r", "\n")
    value = _EXCESS_NEWLINES.sub("\n\n", value)
    value = _EXCESS_SPACES.sub(" ", value)
    return value.strip()


def estimate_token_count(value: str) -> int:
    """Coarse token estimate (four characters per token), never below one."""
    return max(1, math.ceil(len(value) / 4))


def read_text_from_pdf(file_path: str) -> str:
    pdf = PdfReader(file_path)
    parts = []
    for page in pdf.pages:
        parts.append(page.extract_text() or "")
    return "\n\n".join(parts)


def read_text_from_docx(file_path: str) -> str:
    """
    Extract text from DOCX file including both paragraphs and tables.
    Tables are converted to readable text format.
    """
    doc = DocxDocument(file_path)
    parts = []

    for para in doc.paragraphs:
        text = para.text.strip()
        if text:
            parts.append(text)

    for table in doc.tables:
        table_text = extract_table_text(table)
        if table_text:
            parts.append("\n" + table_text)

    return "\n\n".join(parts)


def extract_table_text(table) -> str:
    """
    Convert a DOCX table to readable text format.
    Each row is preserved with clear separators.
    """
    lines = []

    for row in table.rows:
        cells = [cell.text.strip() for cell in row.cells]

        # Skip completely empty rows
        if not any(cells):
            continue

        lines.append(" | ".join(cells))

    return "\n".join(lines)


def read_text_from_csv(file_path: str, encoding="utf-8") -> str:
    """
    One block per row, one "header: value" line per column.
    """
    blocks: List[str] = []
    with open(file_path, "r", encoding=encoding, errors="ignore", newline="") as f:
        reader = csv.DictReader(f)
        for row in reader:
            lines = [
                f"{(key or '').strip()}: {(value or '').strip()}"
                for key, value in row.items()
                if key is not None
            ]
            if lines:
                blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


def read_text_from_txt(file_path: str, encoding="utf-8") -> str:
    with open(file_path, "r", encoding=encoding, errors="ignore") as f:
        return f.read()


def read_any(file_path: str, filename: str) -> str:
    name = filename.lower()
    if name.endswith(".pdf"):
        return read_text_from_pdf(file_path)
    if name.endswith(".docx"):
        return read_text_from_docx(file_path)
    if name.endswith(".csv"):
        return read_text_from_csv(file_path)
    if name.endswith(".txt"):
        return read_text_from_txt(file_path)

    extension = os.path.splitext(name)[1] or name
    raise ValueError(f"Unsupported file extension: {extension}")


def extract_text_from_upload(filename: str, data: bytes) -> str:
    """
    Extract normalized text from an uploaded PDF, DOCX, CSV or TXT file.
    The payload is written to a scratch directory that is always removed.
    """
    safe_name = os.path.basename(filename) or "upload"
    extension = os.path.splitext(safe_name.lower())[1]
    if extension not in SUPPORTED_EXTENSIONS:
        raise ValueError(f"Unsupported file extension: {extension or safe_name}")

    with tempfile.TemporaryDirectory(prefix="kb-upload-") as tmp_dir:
        tmp_path = os.path.join(tmp_dir, safe_name)
        with open(tmp_path, "wb") as tmp:
            tmp.write(data)
        return clean_text(read_any(tmp_path, safe_name))
