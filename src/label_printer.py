"""
Printable Code-128 labels for shipment, pallet and goods codes.

Labels are sized for 203 DPI thermal printers on 65 x 35 mm stock: the
barcode fills the top of the label and up to two lines of text are printed
underneath. Output is PNG, one file per label.

Goods labels encode the pipe format the scan flow reads back
("MAT01|PO1|10").
"""
import io
from pathlib import Path
from typing import Iterable, List, Optional

import barcode
from barcode.writer import ImageWriter
from PIL import Image, ImageDraw, ImageFont

from logger import get_logger
from models import CheckLine

logger = get_logger(__name__)

DPI = 203
LABEL_WIDTH_MM = 65
LABEL_HEIGHT_MM = 35

LABEL_WIDTH_PX = int((LABEL_WIDTH_MM / 25.4) * DPI)    # ~520 pixels
LABEL_HEIGHT_PX = int((LABEL_HEIGHT_MM / 25.4) * DPI)  # ~280 pixels

# Two text lines of 32pt with spacing
TEXT_AREA_HEIGHT = 80
BARCODE_HEIGHT_PX = LABEL_HEIGHT_PX - TEXT_AREA_HEIGHT

FONT_SIZE_PT = 32


def _load_fonts():
    try:
        return ImageFont.truetype("arial.ttf", FONT_SIZE_PT), ImageFont.truetype("arialbd.ttf", FONT_SIZE_PT)
    except IOError:
        logger.warning("Arial fonts not found, falling back to default font")
        font = ImageFont.load_default()
        return font, font


def safe_file_name(content: str, fallback: str = "label") -> str:
    """File name from barcode content: letters, digits, '-' and '_' only."""
    cleaned = "".join(c if c.isalnum() or c in '-_' else '_' for c in str(content)).strip('_')
    return cleaned or fallback


def goods_label_content(material_code: str, po: str = '', quantity=None) -> str:
    """Pipe-format goods label: MATERIAL|PO|QTY (trailing parts omitted when empty)."""
    parts = [str(material_code).strip().upper(), str(po or '').strip().upper()]
    if quantity is not None:
        parts.append(str(quantity))
    while len(parts) > 1 and not parts[-1]:
        parts.pop()
    return "|".join(parts)


class LabelPrinter:
    """
    Renders barcode labels to PNG files.

    Attributes:
        output_dir (Path): Directory the PNG files are written to
    """

    def __init__(self, output_dir):
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self._code128 = barcode.get_barcode_class('code128')
        self._font, self._font_bold = _load_fonts()

    def render(self, content: str, caption: str = '', subcaption: str = '') -> Image.Image:
        """
        Render one label image.

        Args:
            content: Text encoded in the barcode
            caption: First text line under the barcode (defaults to content)
            subcaption: Optional second line, printed bold

        Raises:
            ValueError: If content is empty
        """
        if not str(content).strip():
            raise ValueError("Label content is empty")

        buffer = io.BytesIO()
        self._code128(str(content), writer=ImageWriter()).write(buffer, {
            'module_height': 15.0,
            'write_text': False,
            'quiet_zone': 2,
        })
        buffer.seek(0)
        barcode_img = Image.open(buffer)

        aspect_ratio = barcode_img.width / barcode_img.height
        new_h = BARCODE_HEIGHT_PX
        new_w = min(int(new_h * aspect_ratio), LABEL_WIDTH_PX)
        barcode_img = barcode_img.resize((new_w, new_h), Image.LANCZOS)

        label_img = Image.new('RGB', (LABEL_WIDTH_PX, LABEL_HEIGHT_PX), 'white')
        label_img.paste(barcode_img, ((LABEL_WIDTH_PX - new_w) // 2, 0))

        draw = ImageDraw.Draw(label_img)
        text_y = new_h + 5
        for text, font in ((caption or str(content), self._font), (subcaption, self._font_bold)):
            if not text:
                continue
            bbox = draw.textbbox((0, 0), text, font=font)
            text_x = (LABEL_WIDTH_PX - (bbox[2] - bbox[0])) / 2
            draw.text((text_x, text_y), text, font=font, fill='black')
            text_y += (bbox[3] - bbox[1]) + 5

        return label_img

    def save(self, content: str, caption: str = '', subcaption: str = '',
             file_name: Optional[str] = None) -> Path:
        """Render a label and save it as PNG. Returns the file path."""
        image = self.render(content, caption, subcaption)
        path = self.output_dir / f"{file_name or safe_file_name(content)}.png"
        image.save(path)
        logger.debug(f"Label saved: {path}")
        return path

    def shipment_label(self, shipment_code: str) -> Path:
        return self.save(shipment_code, caption=shipment_code, subcaption="SHIPMENT")

    def pallet_label(self, pallet_code: str, shipment_code: str = '') -> Path:
        return self.save(pallet_code, caption=pallet_code, subcaption=shipment_code)

    def goods_label(self, material_code: str, po: str = '', quantity=None) -> Path:
        content = goods_label_content(material_code, po, quantity)
        caption = f"{material_code} {po}".strip()
        subcaption = f"QTY {quantity}" if quantity is not None else ''
        return self.save(content, caption=caption, subcaption=subcaption)

    def line_labels(self, lines: Iterable[CheckLine]) -> List[Path]:
        """One goods label per line, carrying the expected quantity when known."""
        paths = []
        for line in lines:
            paths.append(self.goods_label(line.material_code, line.pallet_or_po_key,
                                          line.expected_quantity))
        logger.info(f"Generated {len(paths)} line labels in {self.output_dir}")
        return paths
