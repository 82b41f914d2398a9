"""
Document Text Extraction — reader for the document-tree migration adapter

Supports:
    Plain text   .md .markdown .txt .rst .org     (direct read)
    Office docs  .docx .odt                       (python-docx / odfpy, optional)

Office extractors are optional: a missing library triggers a clear ImportError
with install instructions.  The public entry point is ``read_document(path)``.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Union

logger = logging.getLogger(__name__)

TEXT_EXTS = frozenset({".md", ".markdown", ".txt", ".rst", ".org"})

OFFICE_EXTS = frozenset({".docx", ".odt"})

ALL_DOCUMENT_EXTS = TEXT_EXTS | OFFICE_EXTS


def read_document(path: Union[str, Path], *, encoding: str = "utf-8") -> str:
    """
    Return the text content of a document.

    Raises:
        ImportError: When a required extraction library is not installed.
        FileNotFoundError: When the file does not exist.
    """
    p = Path(path)
    ext = p.suffix.lower()
    if ext == ".docx":
        return _extract_docx(str(p))
    if ext == ".odt":
        return _extract_odt(str(p))
    return p.read_text(encoding=encoding, errors="replace")


# --- DOCX (python-docx) ---------------------------------------------------

def _extract_docx(path: str) -> str:
    """Paragraphs then table rows of a .docx file, blank-line separated."""
    try:
        from docx import Document
    except ImportError:
        raise ImportError(
            "python-docx is required for .docx files. "
            "Install with: pip install python-docx   "
            "(or: pip install brainvault[docs])"
        )
    doc = Document(path)
    parts: list[str] = [p.text.strip() for p in doc.paragraphs if p.text.strip()]
    for table in doc.tables:
        for row in table.rows:
            cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
            if cells:
                parts.append(" | ".join(cells))
    return "\n\n".join(parts)


# --- ODT (odfpy) ----------------------------------------------------------

def _extract_odt(path: str) -> str:
    """Headings and paragraphs of an .odt file, in document order."""
    try:
        from odf.opendocument import load as odf_load
        from odf.namespaces import TEXTNS
        from odf import teletype
    except ImportError:
        raise ImportError(
            "odfpy is required for .odt files. "
            "Install with: pip install odfpy   "
            "(or: pip install brainvault[docs])"
        )
    doc = odf_load(path)
    blocks = ((TEXTNS, "h"), (TEXTNS, "p"))
    parts: list[str] = []

    def walk(node) -> None:
        # depth-first keeps document order; lists, sections and tables nest
        # their paragraphs
        for child in getattr(node, "childNodes", None) or ():
            if getattr(child, "qname", None) in blocks:
                text = teletype.extractText(child).strip()
                if text:
                    parts.append(text)
            else:
                walk(child)

    walk(doc.text)
    return "\n\n".join(parts)
