from __future__ import annotations

import base64
import io
from dataclasses import dataclass
from pathlib import Path

import qrcode
from qrcode.image.svg import SvgImage


@dataclass(frozen=True, slots=True)
class PairingChallenge:
    """The one-time code a human scans to link this device."""

    code: str

    def svg(self) -> bytes:
        img = qrcode.make(self.code, image_factory=SvgImage)
        return img.to_string()

    @property
    def data_url(self) -> str:
        return "data:image/svg+xml;base64," + base64.b64encode(self.svg()).decode("ascii")

    def ascii(self, *, invert: bool = True) -> str:
        qr = qrcode.QRCode(border=1)
        qr.add_data(self.code)
        qr.make(fit=True)
        out = io.StringIO()
        qr.print_ascii(out=out, invert=invert)
        return out.getvalue()

    def write_svg(self, path: str | Path) -> Path:
        p = Path(path)
        p.write_bytes(self.svg())
        return p
