"""
Component inference from marketplace item titles.

Turns a free-text listing title such as
"10PCS AMS1117-3.3 SOT-223 3.3V 1A LDO Voltage Regulator" plus the optional
specification table of the listing into a ComponentCandidate.

Pure and deterministic: the same title and specification map always give the
same candidate, and nothing here raises on odd input. A title with no
recognizable signal gives a minimal candidate (generic category, raw title as
name, no tags).
"""

from dataclasses import dataclass
from typing import Optional
import re

from models.order_import import (
    ComponentCandidate,
    VoltageSpec,
    CurrentSpec,
    ResistanceSpec,
    CapacitanceSpec,
    FrequencySpec,
)

# Constants
DEFAULT_CATEGORY = "Electronic Component"
IMPORT_SOURCE_LABEL = "AliExpress"
MAX_TAGS = 10
MAX_NAME_LENGTH = 255


@dataclass(frozen=True)
class CategoryRule:
    """Keyword rule; higher weight means a more specific category."""
    category: str
    subcategory: Optional[str]
    keywords: tuple[str, ...]
    weight: int
    tags: tuple[str, ...]


# Ties on weight go to the earlier rule
CATEGORY_RULES: tuple[CategoryRule, ...] = (
    CategoryRule(
        "Passive Components", "Resistors",
        ("resistor", "resistors", "potentiometer", "trimpot", "ohm", "ohms"),
        3, ("resistor",),
    ),
    CategoryRule(
        "Passive Components", "Capacitors",
        ("capacitor", "capacitors", "electrolytic", "tantalum", "supercapacitor"),
        3, ("capacitor",),
    ),
    CategoryRule(
        "Passive Components", "Inductors",
        ("inductor", "inductors", "choke"),
        3, ("inductor",),
    ),
    CategoryRule(
        "Discrete Semiconductors", "Diodes",
        ("diode", "diodes", "rectifier", "zener", "schottky"),
        3, ("diode",),
    ),
    CategoryRule(
        "Discrete Semiconductors", "Transistors",
        ("transistor", "transistors", "mosfet", "bjt", "igbt"),
        3, ("transistor",),
    ),
    CategoryRule(
        "Power", "Voltage Regulators",
        ("regulator", "ldo", "buck", "step-down", "step-up", "dc-dc"),
        3, ("power", "regulator"),
    ),
    CategoryRule(
        "Integrated Circuits", "Microcontrollers",
        ("microcontroller", "mcu", "arduino", "esp32", "esp8266", "stm32",
         "atmega", "attiny", "rp2040"),
        3, ("ic", "microcontroller"),
    ),
    CategoryRule(
        "Optoelectronics", "LEDs",
        ("led", "leds"),
        2, ("led",),
    ),
    CategoryRule(
        "Sensors", None,
        ("sensor", "sensors", "detector", "thermistor", "accelerometer", "gyroscope"),
        2, ("sensor",),
    ),
    CategoryRule(
        "Displays", None,
        ("display", "lcd", "oled", "tft"),
        2, ("display",),
    ),
    CategoryRule(
        "Connectors", None,
        ("connector", "connectors", "header", "socket", "terminal", "jack"),
        2, ("connector",),
    ),
    CategoryRule(
        "Integrated Circuits", None,
        ("ic", "chip", "amplifier", "op-amp", "opamp", "driver"),
        1, ("ic",),
    ),
)

MANUFACTURER_NAMES = {
    "texas instruments": "Texas Instruments",
    "stmicroelectronics": "STMicroelectronics",
    "microchip": "Microchip",
    "atmel": "Microchip",
    "espressif": "Espressif",
    "nxp": "NXP",
    "infineon": "Infineon",
    "bosch": "Bosch",
    "vishay": "Vishay",
    "murata": "Murata",
    "yageo": "Yageo",
    "analog devices": "Analog Devices",
    "onsemi": "onsemi",
    "nordic": "Nordic Semiconductor",
    "wch": "WCH",
}

# Longest prefix wins
PART_PREFIX_MANUFACTURERS = {
    "STM32": "STMicroelectronics",
    "STM8": "STMicroelectronics",
    "ATMEGA": "Microchip",
    "ATTINY": "Microchip",
    "PIC": "Microchip",
    "MCP": "Microchip",
    "ESP": "Espressif",
    "NRF": "Nordic Semiconductor",
    "TPS": "Texas Instruments",
    "LM": "Texas Instruments",
    "NE": "Texas Instruments",
    "AMS": "Advanced Monolithic Systems",
    "CH": "WCH",
    "RP": "Raspberry Pi",
    "MAX": "Analog Devices",
    "AD": "Analog Devices",
    "WS": "Worldsemi",
    "IRF": "Infineon",
    "BME": "Bosch",
    "BMP": "Bosch",
    "MPU": "TDK InvenSense",
}

# Letter prefixes that look like part numbers but are packages or units
NON_PART_PREFIXES = {
    "SOT", "SOP", "SOIC", "SSOP", "TSSOP", "MSOP", "QFN", "DFN", "QFP", "LQFP",
    "TQFP", "DIP", "BGA", "TO", "AWG", "PCS", "USB", "DC", "AC", "RS", "IP",
    "MM", "CM", "PIN", "PINS", "SMD", "RGB", "HZ", "KHZ", "MHZ", "GHZ",
}

PIN_NAMED_PACKAGES = (
    "DIP", "SOP", "SOIC", "SSOP", "TSSOP", "MSOP", "QFN", "DFN", "QFP", "LQFP", "TQFP",
)

PROTOCOL_PATTERNS: tuple[tuple[str, re.Pattern], ...] = (
    ("I2C", re.compile(r"(?<![a-z0-9])(?:i2c|iic|i²c)(?![a-z0-9])", re.I)),
    ("SPI", re.compile(r"(?<![a-z0-9])spi(?![a-z0-9])", re.I)),
    ("UART", re.compile(r"(?<![a-z0-9])uart(?![a-z0-9])", re.I)),
    ("USB", re.compile(r"(?<![a-z0-9])usb(?![a-z])", re.I)),
    # Upper case only; "can" is an ordinary English word
    ("CAN", re.compile(r"(?<![A-Za-z0-9])CAN(?:[ -]?BUS)?(?![A-Za-z0-9])")),
    ("Ethernet", re.compile(r"(?<![a-z0-9])ethernet(?![a-z0-9])", re.I)),
    ("WiFi", re.compile(r"(?<![a-z0-9])wi-?fi(?![a-z0-9])", re.I)),
    ("Bluetooth", re.compile(r"(?<![a-z0-9])bluetooth(?![a-z0-9])", re.I)),
    ("BLE", re.compile(r"(?<![a-z0-9])ble(?![a-z0-9])", re.I)),
    ("LoRa", re.compile(r"(?<![a-z0-9])lora(?:wan)?(?![a-z0-9])", re.I)),
    ("Zigbee", re.compile(r"(?<![a-z0-9])zigbee(?![a-z0-9])", re.I)),
    ("RS485", re.compile(r"(?<![a-z0-9])rs-?485(?![0-9])", re.I)),
    ("RS232", re.compile(r"(?<![a-z0-9])rs-?232(?![0-9])", re.I)),
    ("1-Wire", re.compile(r"(?<![a-z0-9])(?:1-?wire|one-?wire)(?![a-z0-9])", re.I)),
)

STOPWORDS = {
    "a", "an", "and", "or", "the", "for", "with", "of", "in", "on", "to", "by",
    "new", "original", "genuine", "pcs", "pc", "lot", "piece", "pieces", "set",
    "free", "shipping", "high", "quality", "hot", "sale", "best", "diy",
    "x", "type", "electronic", "electronics", "component", "components",
}

UNIT_WORDS = {
    "v", "mv", "kv", "vdc", "vac", "a", "ma", "ua", "w", "mw", "ohm", "ohms",
    "k", "r", "pf", "nf", "uf", "f", "hz", "khz", "mhz", "ghz", "mm", "cm",
    "inch", "pin", "pins", "mah",
}

_NUM = r"(\d+(?:\.\d+)?)"

PART_NUMBER_PATTERN = re.compile(
    r"(?<![A-Z0-9])(?P<prefix>[A-Z]{2,6})(?P<digits>\d{2,6})"
    r"(?P<suffix>[A-Z0-9]*(?:-[A-Z0-9]+(?:\.\d+)?)*)(?![A-Z0-9]|\.\d)"
)
VOLTAGE_RANGE_PATTERN = re.compile(
    rf"(?<![\w.]){_NUM}\s*V?\s*(?:-|~|–|to)\s*{_NUM}\s*(?:V|volts?)(?:DC|AC)?(?![A-Za-z])",
    re.I,
)
VOLTAGE_PATTERN = re.compile(
    rf"(?<![\w.]){_NUM}\s*(?:V|volts?)(?:DC|AC)?(?![A-Za-z])", re.I
)
CURRENT_RANGE_PATTERN = re.compile(
    rf"(?<![\w.]){_NUM}\s*(?:-|~|–|to)\s*{_NUM}\s*(m|u|µ)?A(?![A-Za-z])", re.I
)
CURRENT_PATTERN = re.compile(rf"(?<![\w.]){_NUM}\s*(m|u|µ)?A(?![A-Za-z])", re.I)
RESISTANCE_PATTERN = re.compile(
    rf"(?<![\w.]){_NUM}\s*([kmg]?)\s*(?:Ω|ohms?|R)(?![A-Za-z0-9])", re.I
)
# 10K, 4K7, 2R2 shorthand; only trusted for resistors. "2R2" is never a
# plain "R" unit match because RESISTANCE_PATTERN rejects a trailing digit.
RESISTOR_SHORTHAND_PATTERN = re.compile(
    r"(?<![\w.])(\d+(?:\.\d+)?)([kmr])(\d*)(?![\w])", re.I
)
TOLERANCE_PATTERN = re.compile(r"(?:±\s*)?(\d+(?:\.\d+)?)\s*%")
CAPACITANCE_PATTERN = re.compile(rf"(?<![\w.]){_NUM}\s*([pnuµm])\s*F(?![A-Za-z])", re.I)
FREQUENCY_PATTERN = re.compile(
    rf"(?<![\w.]){_NUM}(?:\s*(?:-|~|–|to)\s*{_NUM})?\s*([kmg]?)Hz(?![A-Za-z])", re.I
)
PIN_COUNT_PATTERN = re.compile(r"(?<![\w.])(\d{1,3})\s*-?\s*pins?(?![a-z])", re.I)
PACKAGE_PATTERNS = (
    re.compile(r"(?<![\w.])(0201|0402|0603|0805|1206|1210|2512)(?![\w.])"),
    re.compile(r"(?<![A-Za-z0-9])(SOT-?\d{2,3}(?:-\d)?)(?![A-Za-z0-9])", re.I),
    re.compile(r"(?<![A-Za-z0-9])(TO-?\d{2,3})(?![A-Za-z0-9])", re.I),
    re.compile(
        r"(?<![A-Za-z0-9])((?:LQFP|TQFP|TSSOP|SSOP|MSOP|SOIC|SOP|QFN|DFN|QFP|DIP|BGA)(?:-?\d{1,3})?)(?![A-Za-z0-9])",
        re.I,
    ),
)
TAG_TOKEN_PATTERN = re.compile(r"(?<![a-z0-9.])[a-z][a-z0-9+\-]*")


def extract_component(
    title: str,
    specifications: Optional[dict[str, str]] = None,
) -> ComponentCandidate:
    """
    Infer a component candidate from an item title.

    Args:
        title: Listing title as shown in the order export
        specifications: Optional label -> value table from the listing

    Returns:
        ComponentCandidate (minimal candidate when nothing is recognized)
    """
    title = _clean_title(title)
    specifications = specifications or {}
    spec_text = " ".join(f"{k} {v}" for k, v in specifications.items() if v)

    rule = _match_category(title)
    part_number, manufacturer = _extract_part_number(title)
    is_resistor = rule is not None and rule.subcategory == "Resistors"

    resistance = _extract_resistance(title, is_resistor) or _extract_resistance(spec_text, is_resistor)
    capacitance = _extract_capacitance(title) or _extract_capacitance(spec_text)
    voltage = _extract_voltage(title) or _extract_voltage(spec_text)
    current = _extract_current(title) or _extract_current(spec_text)
    frequency = _extract_frequency(title) or _extract_frequency(spec_text)
    package_type = _extract_package(title) or _extract_package(spec_text)
    pin_count = _extract_pin_count(title, package_type)
    protocols = _extract_protocols(title)

    if capacitance is not None and voltage is not None and voltage.nominal is not None:
        capacitance = capacitance.model_copy(update={"voltage_rating": voltage.nominal})

    # Category falls back on what the values imply
    category, subcategory, category_tags = DEFAULT_CATEGORY, None, ()
    if rule is not None:
        category, subcategory, category_tags = rule.category, rule.subcategory, rule.tags
    elif resistance is not None:
        category, subcategory, category_tags = "Passive Components", "Resistors", ("resistor",)
    elif capacitance is not None:
        category, subcategory, category_tags = "Passive Components", "Capacitors", ("capacitor",)
    elif part_number is not None:
        category, category_tags = "Integrated Circuits", ("ic",)

    name = title[:MAX_NAME_LENGTH] or DEFAULT_CATEGORY
    recognized = any((
        rule, part_number, resistance, capacitance, voltage, current,
        frequency, package_type, pin_count, protocols,
    ))
    if not recognized:
        return ComponentCandidate(
            name=name,
            category=DEFAULT_CATEGORY,
            description=f"Imported from {IMPORT_SOURCE_LABEL}: {title}",
        )

    candidate = ComponentCandidate(
        name=name,
        category=category,
        subcategory=subcategory,
        part_number=part_number,
        manufacturer=manufacturer,
        tags=_derive_tags(title, category_tags, part_number),
        package_type=package_type,
        voltage=voltage,
        current=current,
        resistance=resistance,
        capacitance=capacitance,
        frequency=frequency,
        pin_count=pin_count,
        protocols=protocols,
    )
    candidate.description = _build_description(title, candidate)
    return candidate


# ===================
# CATEGORY & PART NUMBER
# ===================

def _clean_title(title: Optional[str]) -> str:
    if not title:
        return ""
    return re.sub(r"\s+", " ", str(title)).strip()


def _keyword_in(keyword: str, text: str) -> bool:
    return re.search(rf"(?<![a-z0-9]){re.escape(keyword)}(?![a-z0-9])", text) is not None


def _match_category(title: str) -> Optional[CategoryRule]:
    """Highest-weight rule with a keyword in the title; ties go to table order."""
    lowered = title.lower()
    best: Optional[CategoryRule] = None
    for rule in CATEGORY_RULES:
        if best is not None and rule.weight <= best.weight:
            continue
        if any(_keyword_in(k, lowered) for k in rule.keywords):
            best = rule
    return best


def _extract_part_number(title: str) -> tuple[Optional[str], Optional[str]]:
    """
    Find a manufacturer-style part number.

    A token right after a manufacturer name wins; otherwise the earliest one.

    Returns:
        (part_number, manufacturer)
    """
    upper = title.upper()
    tokens = [
        m for m in PART_NUMBER_PATTERN.finditer(upper)
        if m.group("prefix") not in NON_PART_PREFIXES
    ]

    lowered = title.lower()
    named_manufacturer, name_end = None, None
    for keyword, manufacturer in MANUFACTURER_NAMES.items():
        m = re.search(rf"(?<![a-z0-9]){re.escape(keyword)}(?![a-z0-9])", lowered)
        if m and (name_end is None or m.start() < name_end):
            named_manufacturer, name_end = manufacturer, m.end()

    if not tokens:
        return None, named_manufacturer

    chosen = tokens[0]
    if name_end is not None:
        after = [m for m in tokens if m.start() >= name_end]
        if after:
            chosen = after[0]

    part_number = chosen.group(0)
    return part_number, named_manufacturer or _manufacturer_from_prefix(part_number)


def _manufacturer_from_prefix(part_number: str) -> Optional[str]:
    for prefix in sorted(PART_PREFIX_MANUFACTURERS, key=len, reverse=True):
        if part_number.startswith(prefix):
            return PART_PREFIX_MANUFACTURERS[prefix]
    return None


# ===================
# ELECTRICAL SPECS
# ===================

def _extract_voltage(text: str) -> Optional[VoltageSpec]:
    if not text:
        return None
    m = VOLTAGE_RANGE_PATTERN.search(text)
    if m:
        low, high = sorted((float(m.group(1)), float(m.group(2))))
        return VoltageSpec(min=low, max=high)
    m = VOLTAGE_PATTERN.search(text)
    if m:
        return VoltageSpec(nominal=float(m.group(1)))
    return None


def _current_unit(prefix: Optional[str]) -> str:
    if not prefix:
        return "A"
    return "mA" if prefix.lower() == "m" else "µA"


def _extract_current(text: str) -> Optional[CurrentSpec]:
    if not text:
        return None
    m = CURRENT_RANGE_PATTERN.search(text)
    if m:
        low, high = sorted((float(m.group(1)), float(m.group(2))))
        return CurrentSpec(min=low, max=high, unit=_current_unit(m.group(3)))
    m = CURRENT_PATTERN.search(text)
    if m:
        return CurrentSpec(value=float(m.group(1)), unit=_current_unit(m.group(2)))
    return None


RESISTANCE_UNITS = {"": "Ω", "r": "Ω", "k": "kΩ", "m": "MΩ", "g": "GΩ"}


def _extract_resistance(text: str, allow_shorthand: bool) -> Optional[ResistanceSpec]:
    if not text:
        return None
    value, unit = None, None
    m = RESISTANCE_PATTERN.search(text)
    if m:
        value, unit = float(m.group(1)), RESISTANCE_UNITS[m.group(2).lower()]
    elif allow_shorthand:
        m = RESISTOR_SHORTHAND_PATTERN.search(text)
        if m:
            whole, multiplier, fraction = m.group(1), m.group(2).lower(), m.group(3)
            value = float(f"{whole}.{fraction}") if fraction else float(whole)
            unit = RESISTANCE_UNITS[multiplier]
    if value is None:
        return None

    tolerance = None
    t = TOLERANCE_PATTERN.search(text)
    if t:
        tolerance = f"{_fmt(float(t.group(1)))}%"
    return ResistanceSpec(value=value, unit=unit, tolerance=tolerance)


CAPACITANCE_UNITS = {"p": "pF", "n": "nF", "u": "µF", "µ": "µF", "m": "mF"}


def _extract_capacitance(text: str) -> Optional[CapacitanceSpec]:
    if not text:
        return None
    m = CAPACITANCE_PATTERN.search(text)
    if not m:
        return None
    return CapacitanceSpec(
        value=float(m.group(1)),
        unit=CAPACITANCE_UNITS[m.group(2).lower()],
    )


FREQUENCY_UNITS = {"": "Hz", "k": "kHz", "m": "MHz", "g": "GHz"}


def _extract_frequency(text: str) -> Optional[FrequencySpec]:
    if not text:
        return None
    m = FREQUENCY_PATTERN.search(text)
    if not m:
        return None
    unit = FREQUENCY_UNITS[m.group(3).lower()]
    if m.group(2):
        low, high = sorted((float(m.group(1)), float(m.group(2))))
        return FrequencySpec(min=low, max=high, unit=unit)
    return FrequencySpec(value=float(m.group(1)), unit=unit)


# ===================
# PACKAGE, PINS, PROTOCOLS
# ===================

def _extract_package(text: str) -> Optional[str]:
    """Earliest package code in the text, upper-cased as written."""
    if not text:
        return None
    found = []
    for pattern in PACKAGE_PATTERNS:
        m = pattern.search(text)
        if m:
            found.append((m.start(), m.group(1).upper()))
    if not found:
        return None
    return min(found)[1]


def _extract_pin_count(title: str, package_type: Optional[str]) -> Optional[int]:
    m = PIN_COUNT_PATTERN.search(title)
    if m and int(m.group(1)) > 0:
        return int(m.group(1))
    if package_type:
        pm = re.match(rf"({'|'.join(PIN_NAMED_PACKAGES)})-?(\d+)$", package_type)
        if pm and int(pm.group(2)) > 0:
            return int(pm.group(2))
    return None


def _extract_protocols(title: str) -> list[str]:
    return [name for name, pattern in PROTOCOL_PATTERNS if pattern.search(title)]


# ===================
# TAGS & DESCRIPTION
# ===================

def _derive_tags(
    title: str,
    category_tags: tuple[str, ...],
    part_number: Optional[str],
) -> list[str]:
    tags: list[str] = []
    for tag in category_tags:
        if tag not in tags:
            tags.append(tag)

    part_lower = part_number.lower() if part_number else None
    for token in TAG_TOKEN_PATTERN.findall(title.lower()):
        token = token.strip("-+")
        if len(tags) >= MAX_TAGS:
            break
        if len(token) < 2 or len(token) > 50:
            continue
        if token in STOPWORDS or token in UNIT_WORDS:
            continue
        # Part numbers like lm2596s-5.0 tokenize as lm2596s-5
        if part_lower and part_lower.startswith(token) and any(ch.isdigit() for ch in token):
            continue
        if token not in tags:
            tags.append(token)
    return tags[:MAX_TAGS]


def _fmt(value: Optional[float]) -> str:
    return f"{value:g}" if value is not None else ""


def _describe_range(value, low, high, unit) -> str:
    if low is not None and high is not None:
        return f"{_fmt(low)}-{_fmt(high)}{unit}"
    return f"{_fmt(value)}{unit}"


def _build_description(title: str, c: ComponentCandidate) -> str:
    parts = [f"Imported from {IMPORT_SOURCE_LABEL}: {title}"]
    if c.resistance:
        text = f"Resistance: {_fmt(c.resistance.value)}{c.resistance.unit}"
        if c.resistance.tolerance:
            text += f" ±{c.resistance.tolerance}"
        parts.append(text)
    if c.capacitance:
        text = f"Capacitance: {_fmt(c.capacitance.value)}{c.capacitance.unit}"
        if c.capacitance.voltage_rating is not None:
            text += f" {_fmt(c.capacitance.voltage_rating)}V"
        parts.append(text)
    if c.voltage:
        parts.append(f"Voltage: {_describe_range(c.voltage.nominal, c.voltage.min, c.voltage.max, 'V')}")
    if c.current:
        parts.append(f"Current: {_describe_range(c.current.value, c.current.min, c.current.max, c.current.unit)}")
    if c.frequency:
        parts.append(
            f"Frequency: {_describe_range(c.frequency.value, c.frequency.min, c.frequency.max, c.frequency.unit)}"
        )
    if c.package_type:
        parts.append(f"Package: {c.package_type}")
    if c.protocols:
        parts.append(f"Protocols: {', '.join(c.protocols)}")
    return ". ".join(parts)
