from typing import Optional, Tuple
from PIL import ImageColor


def hex_to_rgb(value: str) -> Tuple[int, int, int]:
    """Parse '#RRGGBB' (or 'RRGGBB') into an RGB tuple. Raises ValueError."""
    text = value.strip()
    if not text.startswith("#"):
        text = "#" + text
    rgb = ImageColor.getrgb(text)
    return rgb[0], rgb[1], rgb[2]


def rgb_to_hex(rgb: Tuple[int, int, int]) -> str:
    r, g, b = rgb
    return "#%02X%02X%02X" % (r, g, b)


def normalize_hex_color(value: str) -> str:
    return rgb_to_hex(hex_to_rgb(value))


def parse_hex_color(value) -> Optional[str]:
    """Lenient variant used while decoding remote records: bad values read as no color."""
    if not isinstance(value, str):
        return None
    try:
        return normalize_hex_color(value)
    except ValueError:
        return None
