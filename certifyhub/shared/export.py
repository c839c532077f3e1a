from __future__ import annotations

import io
import zipfile
from typing import Callable, Sequence

from .fields import BulkRow, Field
from .render import merge_row, render_certificate_pdf

ZIP_FILENAME = "certificates.zip"


def export_zip(
    template_path: str,
    fields: Sequence[Field],
    rows: Sequence[BulkRow],
    progress: Callable[[int], None] | None = None,
) -> bytes:
    """Render every row to a PDF and package them as ``certificate_<n>.pdf``.

    Rows are rendered in order. The first failure propagates and no archive is
    returned.
    """
    total = len(rows)
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
        for index, row in enumerate(rows, start=1):
            pdf_bytes = render_certificate_pdf(template_path, merge_row(fields, row))
            archive.writestr(f"certificate_{index}.pdf", pdf_bytes)
            if progress:
                progress(int(index * 100 / total))
    return buffer.getvalue()
