"""
Helpers for building in-memory legacy export archives.
"""

import io
import zipfile
from typing import Dict, Union


def build_archive(entries: Dict[str, Union[str, bytes]]) -> bytes:
    """Zip ``{entry_name: content}`` into archive bytes."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
        for name, content in entries.items():
            data = content.encode("utf-8") if isinstance(content, str) else content
            archive.writestr(name, data)
    return buffer.getvalue()


def partner_rows(count: int, start: int = 1) -> str:
    """Headerless ``dbo.Partner`` export: id, name, city id, code and tax id columns."""
    lines = []
    for number in range(start, start + count):
        cells = [""] * 18
        cells[0] = str(number)
        cells[1] = f"Partner {number} d.o.o."
        cells[5] = f"P{number:03d}"
        cells[10] = f"10{number:07d}"
        cells[17] = "1"
        lines.append(",".join(cells))
    return "\n".join(lines) + "\n"


def item_rows(count: int, start: int = 1) -> str:
    """Headerless ``dbo.Item`` export: id, name and sku columns."""
    return "".join(f"{n},Artikal {n},SKU-{n:04d}\n" for n in range(start, start + count))
