"""
Style Service - Fonts, cell styles and a per-workbook style registry.

Builders produce immutable CellStyle values that can be applied to any
cell (including write-only cells) and deduplicated in a StyleRegistry.
"""

import logging
from copy import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Union

from openpyxl.styles import Alignment, Border, Font, NamedStyle, PatternFill, Protection, Side
from openpyxl.styles.colors import COLOR_INDEX, Color
from openpyxl.workbook.workbook import Workbook

logger = logging.getLogger(__name__)


class IndexedColor(Enum):
    """Legacy indexed colour palette."""

    BLACK1 = 0
    WHITE1 = 1
    RED1 = 2
    BRIGHT_GREEN1 = 3
    BLUE1 = 4
    YELLOW1 = 5
    PINK1 = 6
    TURQUOISE1 = 7
    BLACK = 8
    WHITE = 9
    RED = 10
    BRIGHT_GREEN = 11
    BLUE = 12
    YELLOW = 13
    PINK = 14
    TURQUOISE = 15
    DARK_RED = 16
    GREEN = 17
    DARK_BLUE = 18
    DARK_YELLOW = 19
    VIOLET = 20
    TEAL = 21
    GREY_25_PERCENT = 22
    GREY_50_PERCENT = 23
    CORNFLOWER_BLUE = 24
    MAROON = 25
    LEMON_CHIFFON = 26
    LIGHT_TURQUOISE1 = 27
    ORCHID = 28
    CORAL = 29
    ROYAL_BLUE = 30
    LIGHT_CORNFLOWER_BLUE = 31
    SKY_BLUE = 40
    LIGHT_TURQUOISE = 41
    LIGHT_GREEN = 42
    LIGHT_YELLOW = 43
    PALE_BLUE = 44
    ROSE = 45
    LAVENDER = 46
    TAN = 47
    LIGHT_BLUE = 48
    AQUA = 49
    LIME = 50
    GOLD = 51
    LIGHT_ORANGE = 52
    ORANGE = 53
    BLUE_GREY = 54
    GREY_40_PERCENT = 55
    DARK_TEAL = 56
    SEA_GREEN = 57
    DARK_GREEN = 58
    OLIVE_GREEN = 59
    BROWN = 60
    PLUM = 61
    INDIGO = 62
    GREY_80_PERCENT = 63
    AUTOMATIC = 64

    def to_color(self) -> Color:
        return Color(indexed=self.value)

    @property
    def argb(self) -> Optional[str]:
        """ARGB hex of the default palette entry; None for AUTOMATIC."""
        if self.value < len(COLOR_INDEX):
            return COLOR_INDEX[self.value]
        return None


class FillPattern(str, Enum):
    NO_FILL = 'none'
    SOLID = 'solid'
    GRAY_125 = 'gray125'
    GRAY_0625 = 'gray0625'
    LIGHT_GRAY = 'lightGray'
    MEDIUM_GRAY = 'mediumGray'
    DARK_GRAY = 'darkGray'
    LIGHT_DOWN = 'lightDown'
    LIGHT_UP = 'lightUp'
    LIGHT_GRID = 'lightGrid'
    LIGHT_HORIZONTAL = 'lightHorizontal'
    LIGHT_VERTICAL = 'lightVertical'
    LIGHT_TRELLIS = 'lightTrellis'
    DARK_DOWN = 'darkDown'
    DARK_UP = 'darkUp'
    DARK_GRID = 'darkGrid'
    DARK_HORIZONTAL = 'darkHorizontal'
    DARK_VERTICAL = 'darkVertical'
    DARK_TRELLIS = 'darkTrellis'


class HorizontalAlignment(str, Enum):
    GENERAL = 'general'
    LEFT = 'left'
    CENTER = 'center'
    RIGHT = 'right'
    FILL = 'fill'
    JUSTIFY = 'justify'
    CENTER_SELECTION = 'centerContinuous'
    DISTRIBUTED = 'distributed'


class VerticalAlignment(str, Enum):
    TOP = 'top'
    CENTER = 'center'
    BOTTOM = 'bottom'
    JUSTIFY = 'justify'
    DISTRIBUTED = 'distributed'


class BorderStyle(str, Enum):
    NONE = 'none'
    THIN = 'thin'
    MEDIUM = 'medium'
    DASHED = 'dashed'
    DOTTED = 'dotted'
    THICK = 'thick'
    DOUBLE = 'double'
    HAIR = 'hair'
    MEDIUM_DASHED = 'mediumDashed'
    DASH_DOT = 'dashDot'
    MEDIUM_DASH_DOT = 'mediumDashDot'
    DASH_DOT_DOT = 'dashDotDot'
    MEDIUM_DASH_DOT_DOT = 'mediumDashDotDot'
    SLANTED_DASH_DOT = 'slantDashDot'


ColorLike = Union[IndexedColor, Color, str]


def to_color(color: ColorLike) -> Color:
    """
    Convert an IndexedColor, ARGB/RGB hex string or Color to a Color.

    Hex strings may start with '#'; six-digit values get an opaque alpha.
    """
    if isinstance(color, IndexedColor):
        return color.to_color()
    if isinstance(color, Color):
        return color
    rgb = color.lstrip('#').upper()
    if len(rgb) == 6:
        rgb = 'FF' + rgb
    if len(rgb) != 8:
        raise ValueError(f"Invalid colour: {color!r}")
    return Color(rgb=rgb)


class FontBuilder:
    """
    Chainable builder for openpyxl fonts.

    Example:
        font = FontBuilder().name("Arial").bold().color(IndexedColor.RED).get()
    """

    def __init__(self, source: Union[Workbook, Font, None] = None):
        self._attrs = {}
        if isinstance(source, Font):
            self._attrs = {
                'name': source.name, 'sz': source.sz, 'b': source.b, 'i': source.i,
                'strike': source.strike, 'u': source.u, 'color': source.color,
                'vertAlign': source.vertAlign, 'family': source.family,
                'charset': source.charset, 'scheme': source.scheme,
            }

    @classmethod
    def from_cell(cls, cell) -> 'FontBuilder':
        return cls(copy(cell.font))

    def name(self, name: str) -> 'FontBuilder':
        self._attrs['name'] = name
        return self

    def color(self, color: ColorLike) -> 'FontBuilder':
        self._attrs['color'] = to_color(color)
        return self

    def bold(self, flag: bool = True) -> 'FontBuilder':
        self._attrs['b'] = flag
        return self

    def italic(self, flag: bool = True) -> 'FontBuilder':
        self._attrs['i'] = flag
        return self

    def strikeout(self, flag: bool = True) -> 'FontBuilder':
        self._attrs['strike'] = flag
        return self

    def underline(self, flag: bool = True) -> 'FontBuilder':
        self._attrs['u'] = 'single' if flag else None
        return self

    def height(self, points: float) -> 'FontBuilder':
        """Font size in points."""
        if points <= 0:
            raise ValueError(f"Font height must be positive: {points}")
        self._attrs['sz'] = points
        return self

    def get(self) -> Font:
        return Font(**{k: v for k, v in self._attrs.items() if v is not None})


@dataclass(frozen=True)
class CellStyle:
    """
    Immutable, hashable cell style.

    openpyxl style objects compare and hash by value, so two styles built
    the same way are equal.
    """

    font: Font = field(default_factory=Font)
    fill: PatternFill = field(default_factory=PatternFill)
    border: Border = field(default_factory=Border)
    alignment: Alignment = field(default_factory=Alignment)
    protection: Protection = field(default_factory=Protection)
    number_format: str = 'General'

    def apply(self, cell):
        """Assign every part of the style to a cell."""
        cell.font = self.font
        cell.fill = self.fill
        cell.border = self.border
        cell.alignment = self.alignment
        cell.protection = self.protection
        cell.number_format = self.number_format
        return cell

    @classmethod
    def from_cell(cls, cell) -> 'CellStyle':
        fill = copy(cell.fill)
        return cls(
            font=copy(cell.font),
            fill=fill if isinstance(fill, PatternFill) else PatternFill(),
            border=copy(cell.border),
            alignment=copy(cell.alignment),
            protection=copy(cell.protection),
            number_format=cell.number_format,
        )


_BORDER_SIDES = ('left', 'right', 'top', 'bottom')


class CellStyleBuilder:
    """
    Chainable builder for CellStyle values.

    Start from nothing, a cell, an existing CellStyle, or a registry index:

        CellStyleBuilder()
        CellStyleBuilder.from_cell(cell)
        CellStyleBuilder(style)
        CellStyleBuilder(registry, 3)
    """

    def __init__(self, source: Union['CellStyle', 'StyleRegistry', None] = None,
                 index: Optional[int] = None):
        if isinstance(source, StyleRegistry):
            if index is None:
                raise ValueError("A style index is required when building from a registry")
            source = source.style_at(index)
        base = source or CellStyle()
        self._font = base.font
        self._fill = base.fill
        self._border = base.border
        self._alignment = base.alignment
        self._protection = base.protection
        self._number_format = base.number_format

    @classmethod
    def from_cell(cls, cell) -> 'CellStyleBuilder':
        return cls(CellStyle.from_cell(cell))

    def background(self, color: ColorLike, background=None,
                   pattern: FillPattern = FillPattern.SOLID) -> 'CellStyleBuilder':
        """
        Set the cell fill.

        Forms:
            background(color, pattern=FillPattern.SOLID)
            background(foreground, background, pattern)
        """
        if isinstance(background, FillPattern):
            pattern, background = background, None
        kwargs = {'patternType': FillPattern(pattern).value, 'fgColor': to_color(color)}
        if background is not None:
            kwargs['bgColor'] = to_color(background)
        self._fill = PatternFill(**kwargs)
        return self

    def align(self, alignment: Union[HorizontalAlignment, VerticalAlignment]) -> 'CellStyleBuilder':
        current = self._alignment
        horizontal, vertical = current.horizontal, current.vertical
        if isinstance(alignment, HorizontalAlignment):
            horizontal = alignment.value
        elif isinstance(alignment, VerticalAlignment):
            vertical = alignment.value
        else:
            raise TypeError(f"Unsupported alignment: {alignment!r}")
        self._alignment = Alignment(horizontal=horizontal, vertical=vertical,
                                    wrap_text=current.wrap_text, indent=current.indent,
                                    text_rotation=current.text_rotation,
                                    shrink_to_fit=current.shrink_to_fit)
        return self

    def wrap_text(self, flag: bool = True) -> 'CellStyleBuilder':
        current = self._alignment
        self._alignment = Alignment(horizontal=current.horizontal, vertical=current.vertical,
                                    wrap_text=flag, indent=current.indent,
                                    text_rotation=current.text_rotation,
                                    shrink_to_fit=current.shrink_to_fit)
        return self

    def _border_side(self, which: str, value: Union[BorderStyle, ColorLike]) -> 'CellStyleBuilder':
        side = getattr(self._border, which) or Side()
        style, color = side.style, side.color
        if isinstance(value, BorderStyle):
            style = None if value == BorderStyle.NONE else value.value
        else:
            color = to_color(value)
        sides = {name: getattr(self._border, name) for name in _BORDER_SIDES}
        sides[which] = Side(style=style, color=color)
        self._border = Border(diagonal=self._border.diagonal,
                              diagonalUp=self._border.diagonalUp,
                              diagonalDown=self._border.diagonalDown,
                              outline=self._border.outline, **sides)
        return self

    def border_top(self, value: Union[BorderStyle, ColorLike]) -> 'CellStyleBuilder':
        return self._border_side('top', value)

    def border_left(self, value: Union[BorderStyle, ColorLike]) -> 'CellStyleBuilder':
        return self._border_side('left', value)

    def border_right(self, value: Union[BorderStyle, ColorLike]) -> 'CellStyleBuilder':
        return self._border_side('right', value)

    def border_bottom(self, value: Union[BorderStyle, ColorLike]) -> 'CellStyleBuilder':
        return self._border_side('bottom', value)

    def font(self, font: Font) -> 'CellStyleBuilder':
        self._font = font
        return self

    def number_format(self, code: str) -> 'CellStyleBuilder':
        self._number_format = code
        return self

    def get(self) -> CellStyle:
        return CellStyle(font=self._font, fill=self._fill, border=self._border,
                         alignment=self._alignment, protection=self._protection,
                         number_format=self._number_format)


class StyleRegistry:
    """
    Per-workbook registry of cell styles.

    Equal styles are registered once and share an index.
    """

    def __init__(self, workbook: Optional[Workbook] = None):
        self.workbook = workbook
        self._styles: List[CellStyle] = []
        self._index: Dict[CellStyle, int] = {}

    def register(self, style: CellStyle) -> int:
        index = self._index.get(style)
        if index is None:
            index = len(self._styles)
            self._styles.append(style)
            self._index[style] = index
            logger.debug(f"Registered cell style #{index}")
        return index

    def style_at(self, index: int) -> CellStyle:
        if not 0 <= index < len(self._styles):
            raise IndexError(f"No style registered at index {index}")
        return self._styles[index]

    def apply(self, cell, style: Union[CellStyle, int]):
        if isinstance(style, int):
            style = self.style_at(style)
        else:
            self.register(style)
        return style.apply(cell)

    def register_named(self, name: str, style: CellStyle) -> NamedStyle:
        """
        Register a style as a workbook named style.

        Returns the existing named style when the name is taken.
        """
        if self.workbook is None:
            raise ValueError("Named styles need a workbook")
        if name in self.workbook.named_styles:
            return self.workbook._named_styles[name]

        named = NamedStyle(name=name, font=style.font, fill=style.fill, border=style.border,
                           alignment=style.alignment, protection=style.protection,
                           number_format=style.number_format)
        self.workbook.add_named_style(named)
        logger.debug(f"Registered named style '{name}'")
        return named

    def __len__(self) -> int:
        return len(self._styles)

    def __iter__(self):
        return iter(self._styles)
