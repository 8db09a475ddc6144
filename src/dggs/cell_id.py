"""
Bit-level codec for H3-style cell identifiers.

A cell id is a 64-bit unsigned integer laid out as:

    bit 63        reserved (0)
    bits 59-62    mode (1 = cell)
    bits 56-58    reserved (0 for cells)
    bits 52-55    resolution (0-15)
    bits 45-51    base cell (0-121)
    bits 0-44     15 child digits, 3 bits each, resolution 1 first

Digits beyond the cell's resolution are set to 7 (unused).
Everything here is pure integer arithmetic, no grid math.
"""
from dataclasses import dataclass
from typing import Sequence, Tuple

from .exceptions import InvalidArgumentError

MAX_RESOLUTION = 15
NUM_BASE_CELLS = 122

# Base cells sitting on icosahedron vertices
PENTAGON_BASE_CELLS = frozenset({4, 14, 24, 38, 49, 58, 63, 72, 83, 97, 107, 117})

CELL_MODE = 1
CENTER_DIGIT = 0
K_AXES_DIGIT = 1  # direction deleted beneath a pentagon
INVALID_DIGIT = 7
NUM_DIGITS = 7  # valid digits are 0..6

_MODE_OFFSET = 59
_MODE_MASK = 0xF << _MODE_OFFSET
_RESERVED_OFFSET = 56
_RESERVED_MASK = 0x7 << _RESERVED_OFFSET
_RES_OFFSET = 52
_RES_MASK = 0xF << _RES_OFFSET
_BC_OFFSET = 45
_BC_MASK = 0x7F << _BC_OFFSET
_DIGIT_BITS = 3
_DIGIT_MASK = 0x7
_HIGH_BIT = 1 << 63

# All 15 digits set to 7, everything else zero
_INIT = (1 << 45) - 1

MAX_CELL_ID = (1 << 64) - 1


@dataclass(frozen=True)
class CellComponents:
    """Decoded parts of a cell id."""
    level: int
    base_cell: int
    digits: Tuple[int, ...]


def _digit_offset(level: int) -> int:
    return (MAX_RESOLUTION - level) * _DIGIT_BITS


def resolution(cell: int) -> int:
    """Resolution level of a cell id."""
    return (cell & _RES_MASK) >> _RES_OFFSET


def base_cell(cell: int) -> int:
    """Base (root) cell index of a cell id."""
    return (cell & _BC_MASK) >> _BC_OFFSET


def get_digit(cell: int, level: int) -> int:
    """Child digit selecting the cell at `level` (1-based)."""
    return (cell >> _digit_offset(level)) & _DIGIT_MASK


def set_digit(cell: int, level: int, digit: int) -> int:
    offset = _digit_offset(level)
    return (cell & ~(_DIGIT_MASK << offset)) | (digit << offset)


def set_resolution(cell: int, level: int) -> int:
    return (cell & ~_RES_MASK) | (level << _RES_OFFSET)


def digits(cell: int) -> Tuple[int, ...]:
    """Child digits for levels 1..resolution(cell)."""
    return tuple(get_digit(cell, r) for r in range(1, resolution(cell) + 1))


def leading_non_zero_digit(cell: int) -> int:
    """First non-center digit, or CENTER_DIGIT if the cell is on its base cell's center line."""
    for r in range(1, resolution(cell) + 1):
        d = get_digit(cell, r)
        if d != CENTER_DIGIT:
            return d
    return CENTER_DIGIT


def is_pentagon(cell: int) -> bool:
    """A cell is a pentagon when it is the center descendant of a pentagon base cell."""
    return base_cell(cell) in PENTAGON_BASE_CELLS and leading_non_zero_digit(cell) == CENTER_DIGIT


def _check_level(level: int) -> None:
    if not isinstance(level, int) or not 0 <= level <= MAX_RESOLUTION:
        raise InvalidArgumentError(f"Resolution must be in [0, {MAX_RESOLUTION}], got: {level}")


def encode(level: int, base: int, child_digits: Sequence[int]) -> int:
    """
    Pack a resolution, base cell and digit sequence into a cell id.

    Args:
        level: Resolution (0-15)
        base: Base cell index (0-121)
        child_digits: Exactly `level` digits, each in 0..6

    Returns:
        The 64-bit cell id

    Raises:
        InvalidArgumentError: If any component is out of range, or the digits
            descend into the deleted K-axis subsequence of a pentagon
    """
    _check_level(level)
    if not isinstance(base, int) or not 0 <= base < NUM_BASE_CELLS:
        raise InvalidArgumentError(f"Base cell must be in [0, {NUM_BASE_CELLS - 1}], got: {base}")
    child_digits = tuple(child_digits)
    if len(child_digits) != level:
        raise InvalidArgumentError(
            f"Expected {level} digits for resolution {level}, got {len(child_digits)}"
        )

    cell = _INIT | (CELL_MODE << _MODE_OFFSET) | (level << _RES_OFFSET) | (base << _BC_OFFSET)
    on_pentagon = base in PENTAGON_BASE_CELLS
    for r, d in enumerate(child_digits, start=1):
        if not isinstance(d, int) or not 0 <= d < NUM_DIGITS:
            raise InvalidArgumentError(f"Digit at resolution {r} must be in [0, 6], got: {d}")
        if on_pentagon:
            if d == K_AXES_DIGIT:
                raise InvalidArgumentError(
                    f"Digit {K_AXES_DIGIT} at resolution {r} is the deleted direction of pentagon base cell {base}"
                )
            if d != CENTER_DIGIT:
                on_pentagon = False
        cell = set_digit(cell, r, d)
    return cell


def decode(cell: int) -> CellComponents:
    """Split a cell id into resolution, base cell and digits."""
    return CellComponents(level=resolution(cell), base_cell=base_cell(cell), digits=digits(cell))


def is_valid(cell: int) -> bool:
    """Structural validity check of a cell id."""
    if not isinstance(cell, int) or cell < 0 or cell > MAX_CELL_ID:
        return False
    if cell & _HIGH_BIT:
        return False
    if (cell & _MODE_MASK) >> _MODE_OFFSET != CELL_MODE:
        return False
    if cell & _RESERVED_MASK:
        return False
    if base_cell(cell) >= NUM_BASE_CELLS:
        return False

    level = resolution(cell)
    on_pentagon = base_cell(cell) in PENTAGON_BASE_CELLS
    for r in range(1, MAX_RESOLUTION + 1):
        d = get_digit(cell, r)
        if r > level:
            if d != INVALID_DIGIT:
                return False
            continue
        if d == INVALID_DIGIT:
            return False
        if on_pentagon and d != CENTER_DIGIT:
            if d == K_AXES_DIGIT:
                return False
            on_pentagon = False
    return True


def parent(cell: int, level: int) -> int:
    """Ancestor of `cell` at `level`, by truncating the digit sequence."""
    current = resolution(cell)
    _check_level(level)
    if level > current:
        raise InvalidArgumentError(
            f"Parent resolution {level} is finer than cell resolution {current}"
        )
    if level == current:
        return cell
    result = set_resolution(cell, level)
    for r in range(level + 1, current + 1):
        result = set_digit(result, r, INVALID_DIGIT)
    return result


def center_child(cell: int, level: int) -> int:
    """Descendant of `cell` at `level` obtained by following the center digit."""
    current = resolution(cell)
    _check_level(level)
    if level < current:
        raise InvalidArgumentError(
            f"Child resolution {level} is coarser than cell resolution {current}"
        )
    result = set_resolution(cell, level)
    for r in range(current + 1, level + 1):
        result = set_digit(result, r, CENTER_DIGIT)
    return result


def children(cell: int) -> Tuple[int, ...]:
    """Direct children of `cell`; 6 for pentagons, 7 otherwise, none at max resolution."""
    current = resolution(cell)
    if current == MAX_RESOLUTION:
        return ()
    child_level = current + 1
    template = set_resolution(cell, child_level)
    skip_k = is_pentagon(cell)
    return tuple(
        set_digit(template, child_level, d)
        for d in range(NUM_DIGITS)
        if not (skip_k and d == K_AXES_DIGIT)
    )


def to_string(cell: int) -> str:
    """Lower-case hexadecimal form, e.g. "8928308280fffff"."""
    return format(cell, "x")


def from_string(text: str) -> int:
    """Parse the hexadecimal form of a cell id."""
    try:
        cell = int(text, 16)
    except (TypeError, ValueError) as e:
        raise InvalidArgumentError(f"Not a hexadecimal cell id: {text!r}", e) from e
    if not is_valid(cell):
        raise InvalidArgumentError(f"Not a valid cell id: {text!r}")
    return cell
