from __future__ import annotations

"""vertical.py — грубая классификация вертикали по атрибутам карточки."""

from typing import Any


# шведские ключи (основной рынок) + английские эквиваленты
VEHICLE_ATTRIBUTE_KEYS: tuple[str, ...] = (
    "regNr",
    "miltal",
    "bransle",
    "vaxellada",
    "arsmodell",
    "fordonstyp",
    "farg",
    "marke",
    "modell",
    "features",
    "registration_number",
    "mileage",
    "fuel_type",
    "transmission",
    "model_year",
    "body_type",
    "color",
    "make",
    "model",
)


def classify_vertical(attributes: Any) -> str:
    if not isinstance(attributes, dict):
        return "generic"
    for k in VEHICLE_ATTRIBUTE_KEYS:
        if attributes.get(k) is not None:
            return "vehicle"
    return "generic"
