from __future__ import annotations

import base64
import io
from pathlib import Path
import os
from typing import Iterable, List, Optional, Sequence, Tuple
from urllib.parse import quote

import qrcode
from PIL import Image, ImageDraw, ImageFont
from reportlab.lib.units import inch
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from .config import get_public_base_url
from .machines import find_machine_by_tag, get_machine, machine_display_name, resolve_fleet_type, FLEET_TYPE_LABEL

# Fields that may be printed under the TAG
STICKER_FIELDS = ("placa", "setor", "combustivel", "fleetType")


def checklist_url(base_url: str, tag: str) -> str:
    return f"{base_url.rstrip('/')}/checklist/{quote(str(tag), safe='')}"


def make_qr(data: str, box_size: int = 8, border: int = 2) -> Image.Image:
    qr = qrcode.QRCode(version=None, error_correction=qrcode.constants.ERROR_CORRECT_M,
                       box_size=box_size, border=border)
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    # qrcode may hand back its own wrapper; normalize to a PIL RGB image
    if not isinstance(img, Image.Image):
        img = img.get_image()
    return img.convert("RGB")


def qr_png_bytes(data: str, box_size: int = 8) -> bytes:
    bio = io.BytesIO()
    make_qr(data, box_size=box_size).save(bio, format="PNG")
    return bio.getvalue()


def _wrap_text(draw: ImageDraw.ImageDraw, text: str, font, max_width: int) -> List[str]:
    words = (text or "").split()
    lines: List[str] = []
    cur = ""
    for w in words:
        tmp = (cur + (" " if cur else "") + w).strip()
        if draw.textbbox((0, 0), tmp, font=font)[2] <= max_width:
            cur = tmp
        else:
            if cur:
                lines.append(cur)
            cur = w
    if cur:
        lines.append(cur)
    return lines or [text or ""]


def _try_load_font(candidates: Sequence[Optional[str]], size: int):
    for path in candidates:
        if not path:
            continue
        try:
            return ImageFont.truetype(path, size=size)
        except OSError:
            continue
    return None


def _get_fonts(base_sz: int):
    """Title and body fonts; FLEETCHECK_FONT may point to a TrueType file."""
    candidates = [
        os.environ.get("FLEETCHECK_FONT"),
        "DejaVuSans.ttf",
        "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
        "/Library/Fonts/Arial.ttf",
        "/System/Library/Fonts/Supplemental/Arial.ttf",
    ]
    normal = _try_load_font(candidates, base_sz)
    title = _try_load_font(candidates, int(round(base_sz * 1.3)))
    # Bitmap fallback keeps rendering working without system fonts
    return title or ImageFont.load_default(), normal or ImageFont.load_default()


def _field_label(machine: dict, field: str) -> Optional[str]:
    if field == "fleetType":
        return FLEET_TYPE_LABEL[resolve_fleet_type(machine.get("fleetType"))]
    val = machine.get(field)
    if val in (None, ""):
        return None
    return f"{field}: {val}"


def compose_sticker_image(
    machine: dict,
    *,
    base_url: str,
    fields: Optional[Iterable[str]] = None,
    sticker_size: Tuple[int, int] = (600, 300),
    padding: int = 16,
    text_size: int = 24,
) -> Image.Image:
    """Printable sticker: QR with the checklist URL on the left, modelo and TAG on the right."""
    tag = str(machine.get("tag") or "")
    width, height = sticker_size
    img = Image.new("RGB", (width, height), "white")
    draw = ImageDraw.Draw(img)

    code_max = min(height - 2 * padding, width // 2 - 2 * padding)
    code_img = make_qr(checklist_url(base_url, tag)).resize((code_max, code_max), Image.NEAREST)
    img.paste(code_img, (padding, (height - code_max) // 2))

    text_x = padding + code_max + padding
    text_w = width - text_x - padding
    title_font, normal_font = _get_fonts(max(8, int(text_size)))

    y = padding
    for ln in _wrap_text(draw, machine_display_name(machine), title_font, text_w):
        draw.text((text_x, y), ln, fill=(0, 0, 0), font=title_font)
        tb = draw.textbbox((0, 0), ln, font=title_font)
        y += tb[3] - tb[1]

    y += 6
    tag_line = f"TAG: {tag}"
    draw.text((text_x, y), tag_line, fill=(0, 0, 0), font=normal_font)
    tb = draw.textbbox((0, 0), tag_line, font=normal_font)
    y += (tb[3] - tb[1]) + 8

    for f in fields or []:
        label = _field_label(machine, f)
        if label is None:
            continue
        for ln in _wrap_text(draw, label, normal_font, text_w):
            draw.text((text_x, y), ln, fill=(0, 0, 0), font=normal_font)
            tb = draw.textbbox((0, 0), ln, font=normal_font)
            y += tb[3] - tb[1]
        y += 2

    footer = "Checklist"
    fw, fh = draw.textbbox((0, 0), footer, font=normal_font)[2:]
    draw.text((width - padding - fw, height - padding - fh), footer, fill=(120, 120, 120), font=normal_font)
    return img


def image_to_png_bytes(img: Image.Image, dpi: Optional[int] = None) -> bytes:
    bio = io.BytesIO()
    save_kwargs = {"format": "PNG"}
    # pHYs chunk so printers honor the physical size
    if dpi and dpi > 0:
        save_kwargs["dpi"] = (dpi, dpi)
    img.save(bio, **save_kwargs)
    return bio.getvalue()


def _lookup_machine(datarepo_path: Path, ref: str) -> dict:
    machine = find_machine_by_tag(datarepo_path, ref)
    if machine is not None:
        return machine
    try:
        return get_machine(datarepo_path, ref)
    except ValueError:
        raise FileNotFoundError(f"machines document '{ref}' not found")


def generate_sticker_for_machine(
    datarepo_path: Path,
    ref: str,
    *,
    fields: Optional[Iterable[str]] = None,
    size: Tuple[int, int] = (600, 300),
    dpi: int = 300,
    text_size: int = 24,
) -> dict:
    """Sticker for a machine given its TAG or id.

    Returns {machineId, tag, url, fields, png_base64, filename}.
    """
    machine = _lookup_machine(datarepo_path, ref)
    base_url = get_public_base_url(datarepo_path)
    img = compose_sticker_image(machine, base_url=base_url, fields=fields, sticker_size=size, text_size=text_size)
    tag = str(machine.get("tag") or machine["id"])
    return {
        "machineId": machine["id"],
        "tag": tag,
        "url": checklist_url(base_url, tag),
        "fields": list(fields) if fields else [],
        "png_base64": base64.b64encode(image_to_png_bytes(img, dpi=dpi)).decode("ascii"),
        "filename": f"sticker_{tag}_qr.png",
    }


def parse_sticker_size(size_text: str, dpi_text: str, text_size_text: str) -> Tuple[float, float, int, int]:
    """Parse '2x1' inches, DPI and text size. Raises ValueError with a user-facing message."""
    try:
        st = size_text.lower().replace("in", "").strip()
        w_s, h_s = st.split("x", 1)
        w_in, h_in = float(w_s), float(h_s)
        dpi = int(dpi_text)
        tsize = int(text_size_text)
    except (AttributeError, ValueError):
        w_in = h_in = dpi = tsize = 0
    if w_in <= 0 or h_in <= 0 or dpi <= 0 or tsize <= 0:
        raise ValueError(
            "Tamanho/DPI inválido. Use LARGURAxALTURA em polegadas (ex.: 2x1), DPI positivo (ex.: 300) e tamanho de texto positivo."
        )
    return w_in, h_in, dpi, tsize


def build_batch_pdf(
    datarepo_path: Path,
    refs: Sequence[str],
    *,
    fields: Optional[Iterable[str]] = None,
    size_in: Tuple[float, float] = (2.0, 1.0),
    dpi: int = 300,
    text_size: int = 24,
) -> bytes:
    """One sticker per page, in the order given. Raises on the first unknown machine."""
    w_in, h_in = size_in
    size_px = (int(round(w_in * dpi)), int(round(h_in * dpi)))
    pdf_io = io.BytesIO()
    c = canvas.Canvas(pdf_io, pagesize=(w_in * inch, h_in * inch))
    for ref in refs:
        try:
            res = generate_sticker_for_machine(
                datarepo_path, ref, fields=fields, size=size_px, dpi=dpi, text_size=text_size
            )
        except FileNotFoundError:
            raise FileNotFoundError(f"Máquina '{ref}' não encontrada")
        reader = ImageReader(io.BytesIO(base64.b64decode(res["png_base64"])))
        c.drawImage(reader, 0, 0, width=w_in * inch, height=h_in * inch)
        c.showPage()
    c.save()
    return pdf_io.getvalue()
