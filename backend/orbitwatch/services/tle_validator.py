"""Two-line element codec: strict parsing, validation and formatting.

Parsing is strict: a line whose modulo-10 checksum does not match, or whose
elements are outside their physical range, is rejected with MalformedTLE
rather than repaired.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from ..errors import MalformedTLE
from .orbital_constants import (
    DEEP_SPACE_PERIOD_MIN,
    MINUTES_PER_DAY,
    R_EARTH_KM,
    semi_major_axis_from_mean_motion,
)

TLE_LINE_LENGTH = 69


@dataclass(frozen=True)
class TLE:
    """One immutable element set. Angles are stored in radians."""

    norad_id: int
    name: str
    intl_designator: str
    classification: str
    epoch: datetime
    mean_motion: float  # rev/day
    eccentricity: float
    inclination_rad: float
    raan_rad: float
    arg_perigee_rad: float
    mean_anomaly_rad: float
    bstar: float
    mean_motion_dot: float
    mean_motion_ddot: float
    element_set_number: int
    rev_number: int
    line1: str
    line2: str

    @property
    def semi_major_axis_km(self) -> float:
        return semi_major_axis_from_mean_motion(self.mean_motion)

    @property
    def perigee_altitude_km(self) -> float:
        return self.semi_major_axis_km * (1.0 - self.eccentricity) - R_EARTH_KM

    @property
    def apogee_altitude_km(self) -> float:
        return self.semi_major_axis_km * (1.0 + self.eccentricity) - R_EARTH_KM

    @property
    def period_minutes(self) -> float:
        return MINUTES_PER_DAY / self.mean_motion

    @property
    def inclination_deg(self) -> float:
        return math.degrees(self.inclination_rad)

    @property
    def nominally_deep_space(self) -> bool:
        return self.period_minutes >= DEEP_SPACE_PERIOD_MIN

    def same_elements(self, other: "TLE") -> bool:
        """True when both records encode the same orbit (catalog fields aside)."""
        return (
            self.epoch == other.epoch
            and self.line1[18:68] == other.line1[18:68]
            and self.line2[8:63] == other.line2[8:63]
        )

    def summary(self) -> dict:
        return {
            "norad_id": self.norad_id,
            "name": self.name,
            "intl_designator": self.intl_designator,
            "epoch": self.epoch.isoformat(),
            "inclination_deg": self.inclination_deg,
            "eccentricity": self.eccentricity,
            "mean_motion": self.mean_motion,
            "period_minutes": self.period_minutes,
            "perigee_altitude_km": self.perigee_altitude_km,
            "apogee_altitude_km": self.apogee_altitude_km,
        }

    def detail(self) -> dict:
        data = self.summary()
        data.update(
            {
                "classification": self.classification,
                "raan_deg": math.degrees(self.raan_rad),
                "arg_perigee_deg": math.degrees(self.arg_perigee_rad),
                "mean_anomaly_deg": math.degrees(self.mean_anomaly_rad),
                "bstar": self.bstar,
                "mean_motion_dot": self.mean_motion_dot,
                "mean_motion_ddot": self.mean_motion_ddot,
                "element_set_number": self.element_set_number,
                "rev_number": self.rev_number,
                "line1": self.line1,
                "line2": self.line2,
            }
        )
        return data


def tle_checksum(line: str) -> int:
    """Compute TLE modulo-10 checksum for columns 1-68."""
    total = 0
    for ch in line[:68]:
        if ch.isdigit():
            total += int(ch)
        elif ch == "-":
            total += 1
    return total % 10


def _check_line(line: str, number: str) -> str:
    line = line.rstrip()
    if len(line) != TLE_LINE_LENGTH:
        raise MalformedTLE(
            f"TLE line {number} must be {TLE_LINE_LENGTH} characters, got {len(line)}", line
        )
    if line[0] != number or line[1] != " ":
        raise MalformedTLE(f"TLE line {number} must start with '{number} '", line)
    if not line[68].isdigit():
        raise MalformedTLE(f"TLE line {number} checksum column is not a digit", line)
    expected = tle_checksum(line)
    if int(line[68]) != expected:
        raise MalformedTLE(
            f"TLE line {number} checksum mismatch: expected {expected}, found {line[68]}", line
        )
    return line


def _parse_float(field: str, label: str, line: str) -> float:
    try:
        return float(field)
    except ValueError:
        raise MalformedTLE(f"Cannot parse {label} from '{field}'", line) from None


def _parse_int(field: str, label: str, line: str, default: int | None = None) -> int:
    field = field.strip()
    if not field and default is not None:
        return default
    try:
        return int(field)
    except ValueError:
        raise MalformedTLE(f"Cannot parse {label} from '{field}'", line) from None


def _parse_exponent_field(field: str, label: str, line: str) -> float:
    """Decode the implied-decimal exponent notation, e.g. ' 12345-3' -> 0.12345e-3."""
    text = field.strip()
    if not text:
        return 0.0
    sign = 1.0
    if text[0] in "+-":
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]
    if len(text) < 3 or text[-2] not in "+-":
        raise MalformedTLE(f"Cannot parse {label} from '{field}'", line)
    mantissa, exponent = text[:-2], text[-2:]
    try:
        return sign * float("0." + mantissa) * 10.0 ** int(exponent)
    except ValueError:
        raise MalformedTLE(f"Cannot parse {label} from '{field}'", line) from None


def _parse_epoch(line1: str) -> datetime:
    year = _parse_int(line1[18:20], "epoch year", line1)
    day_of_year = _parse_float(line1[20:32], "epoch day", line1)
    if not 1.0 <= day_of_year < 367.0:
        raise MalformedTLE(f"Epoch day {day_of_year} out of range", line1)
    full_year = 2000 + year if year < 57 else 1900 + year
    start = datetime(full_year, 1, 1, tzinfo=timezone.utc)
    offset = timedelta(microseconds=round((day_of_year - 1.0) * 86400e6))
    return start + offset


def parse_tle(line1: str, line2: str, name: str | None = None) -> TLE:
    """Parse and validate one element set.

    Parameters:
        line1: First element line (69 columns).
        line2: Second element line (69 columns).
        name: Optional title line; a leading '0 ' marker is removed.

    Returns:
        The decoded TLE.

    Raises:
        MalformedTLE: on format, checksum or physical-range violations.
    """
    line1 = _check_line(line1, "1")
    line2 = _check_line(line2, "2")

    cat1 = _parse_int(line1[2:7], "catalog number", line1)
    cat2 = _parse_int(line2[2:7], "catalog number", line2)
    if cat1 != cat2:
        raise MalformedTLE(f"Catalog number mismatch: line 1 has {cat1}, line 2 has {cat2}")

    inclination_deg = _parse_float(line2[8:16], "inclination", line2)
    raan_deg = _parse_float(line2[17:25], "RAAN", line2)
    ecc_field = line2[26:33].strip()
    if not ecc_field.isdigit():
        raise MalformedTLE(f"Cannot parse eccentricity from '{line2[26:33]}'", line2)
    eccentricity = float("0." + ecc_field)
    arg_perigee_deg = _parse_float(line2[34:42], "argument of perigee", line2)
    mean_anomaly_deg = _parse_float(line2[43:51], "mean anomaly", line2)
    mean_motion = _parse_float(line2[52:63], "mean motion", line2)
    rev_number = _parse_int(line2[63:68], "revolution number", line2, default=0)

    if not 0.0 <= eccentricity < 1.0:
        raise MalformedTLE(f"Eccentricity {eccentricity} outside [0, 1)", line2)
    if not 0.0 <= inclination_deg <= 180.0:
        raise MalformedTLE(f"Inclination {inclination_deg} deg outside [0, 180]", line2)
    if mean_motion <= 0.0:
        raise MalformedTLE(f"Mean motion {mean_motion} rev/day must be positive", line2)

    title = (name or "").strip()
    if title.startswith("0 "):
        title = title[2:].strip()

    return TLE(
        norad_id=cat1,
        name=title or f"NORAD {cat1}",
        intl_designator=line1[9:17].strip(),
        classification=line1[7].strip() or "U",
        epoch=_parse_epoch(line1),
        mean_motion=mean_motion,
        eccentricity=eccentricity,
        inclination_rad=math.radians(inclination_deg),
        raan_rad=math.radians(raan_deg),
        arg_perigee_rad=math.radians(arg_perigee_deg),
        mean_anomaly_rad=math.radians(mean_anomaly_deg),
        bstar=_parse_exponent_field(line1[53:61], "B*", line1),
        mean_motion_dot=_parse_float(line1[33:43], "mean motion derivative", line1),
        mean_motion_ddot=_parse_exponent_field(line1[44:52], "mean motion second derivative", line1),
        element_set_number=_parse_int(line1[64:68], "element set number", line1, default=0),
        rev_number=rev_number,
        line1=line1,
        line2=line2,
    )


def parse_tle_text(text: str) -> list[TLE]:
    """Parse a newline-delimited multi-TLE file (2-line or 3-line groups).

    The whole text is rejected on the first malformed group so a fetch is
    applied all-or-nothing.
    """
    lines = [line.rstrip() for line in text.splitlines() if line.strip()]
    records: list[TLE] = []
    name: str | None = None
    idx = 0
    while idx < len(lines):
        line = lines[idx]
        if line.startswith("1 "):
            if idx + 1 >= len(lines):
                raise MalformedTLE("Truncated element set: line 2 missing", line)
            records.append(parse_tle(line, lines[idx + 1], name))
            name = None
            idx += 2
            continue
        if line.startswith("2 "):
            raise MalformedTLE("Element line 2 without a preceding line 1", line)
        if name is not None:
            raise MalformedTLE(f"Expected element line after title '{name}'", line)
        name = line
        idx += 1
    if name is not None:
        raise MalformedTLE(f"Title '{name}' is not followed by element lines")
    return records


def _format_exponent_field(value: float) -> str:
    if value == 0.0:
        return " 00000+0"
    exponent = math.floor(math.log10(abs(value))) + 1
    digits = round(abs(value) / 10.0 ** exponent * 1e5)
    if digits >= 100000:
        digits //= 10
        exponent += 1
    sign = "-" if value < 0 else " "
    return f"{sign}{digits:05d}{'-' if exponent < 0 else '+'}{abs(exponent)}"


def _format_first_derivative(value: float) -> str:
    body = f"{abs(value):.8f}"[1:]
    return ("-" if value < 0 else " ") + body


def _with_checksum(line: str) -> str:
    return line + str(tle_checksum(line))


def format_tle(
    norad_id: int,
    epoch: datetime,
    inclination_deg: float,
    raan_deg: float,
    eccentricity: float,
    arg_perigee_deg: float,
    mean_anomaly_deg: float,
    mean_motion: float,
    bstar: float = 0.0,
    name: str | None = None,
    classification: str = "U",
    intl_designator: str = "",
    element_set_number: int = 999,
    rev_number: int = 0,
    mean_motion_dot: float = 0.0,
) -> TLE:
    """Encode elements as a checksummed 69-column line pair and parse it back."""
    epoch = epoch.astimezone(timezone.utc) if epoch.tzinfo else epoch.replace(tzinfo=timezone.utc)
    year_start = datetime(epoch.year, 1, 1, tzinfo=timezone.utc)
    day_of_year = 1.0 + (epoch - year_start).total_seconds() / 86400.0
    epoch_field = f"{epoch.year % 100:02d}{day_of_year:012.8f}"

    line1 = (
        f"1 {norad_id:05d}{classification[:1]} {intl_designator[:8]:<8} {epoch_field} "
        f"{_format_first_derivative(mean_motion_dot)} {_format_exponent_field(0.0)} "
        f"{_format_exponent_field(bstar)} 0 {element_set_number % 10000:4d}"
    )
    ecc_field = f"{int(round(eccentricity * 1e7)):07d}"
    line2 = (
        f"2 {norad_id:05d} {inclination_deg:8.4f} {raan_deg % 360.0:8.4f} {ecc_field} "
        f"{arg_perigee_deg % 360.0:8.4f} {mean_anomaly_deg % 360.0:8.4f} "
        f"{mean_motion:11.8f}{rev_number % 100000:5d}"
    )
    return parse_tle(_with_checksum(line1), _with_checksum(line2), name)
