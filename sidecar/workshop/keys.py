"""
Canonical key vocabulary shared by all calculator modules.

Calculators never import each other; they only publish and read values
through these keys. Every key maps 1:1 to a column of the consolidated
``rhc_study_data`` row (except ``co_method``/``vo2_mode``, which are tags).
Never put study or patient identifiers in this vocabulary.
"""

from __future__ import annotations

from enum import Enum

KEY_VOCABULARY_VERSION = 1


class CalcType(str, Enum):
    FICK = "FICK"
    SVR = "SVR"
    CPO = "CPO"
    PAPI = "PAPI"
    PVR = "PVR"


class SharedKey(str, Enum):
    # Core flow / anthropometrics
    CO_LMIN = "co_lmin"
    BSA_M2 = "bsa_m2"
    CI_LMIN_M2 = "ci_lmin_m2"
    CO_METHOD = "co_method"  # "FICK" | "TD"

    # Fick inputs
    SAO2_PERCENT = "sao2_percent"
    SVO2_PERCENT = "svo2_percent"
    HB_GDL = "hb_gdl"
    HR_BPM = "hr_bpm"
    VO2_MLMIN = "vo2_mlmin"
    VO2_MODE = "vo2_mode"  # "MEASURED" | "ESTIMATED"

    # Pressures, canonical unit mmHg
    MAP_MMHG = "map_mmhg"
    CVP_MMHG = "cvp_mmhg"
    RAP_MMHG = "rap_mmhg"
    PASP_MMHG = "pasp_mmhg"
    PADP_MMHG = "padp_mmhg"
    MPAP_MMHG = "mpap_mmhg"
    PAWP_MMHG = "pawp_mmhg"

    # Resistances
    SVR_WOOD = "svr_wood"
    SVR_DYN = "svr_dyn"
    SVR_UNITS = "svr_units"  # "WOOD" | "DYN"
    PVR_WOOD = "pvr_wood"
    PVR_DYN = "pvr_dyn"
    PVR_UNITS = "pvr_units"  # "WOOD" | "DYN"

    # Cardiac power
    CPO_W = "cpo_w"
    CPI_W_M2 = "cpi_w_m2"

    PAPI = "papi"


class UnknownKeyError(ValueError):
    """Raised when a string is not part of the canonical key vocabulary."""


_BY_VALUE: dict[str, SharedKey] = {k.value: k for k in SharedKey}


def require_key(key: str | SharedKey) -> SharedKey:
    """Resolve *key* to a SharedKey or raise UnknownKeyError."""
    if isinstance(key, SharedKey):
        return key
    try:
        return _BY_VALUE[key]
    except (KeyError, TypeError):
        raise UnknownKeyError(f"Unknown canonical key: {key!r}") from None


def is_known_key(key: str) -> bool:
    return key in _BY_VALUE
