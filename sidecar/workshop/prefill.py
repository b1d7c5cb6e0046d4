"""
One-shot prefill of a calculator screen from values other calculators published.

Each screen declares the fields it can prefill. On activation the adopter
fills every blank field whose canonical value exists, passes validation and
can be converted to the screen's selected display unit. User input is never
overwritten and nothing is written back to the ledger. Rejections are silent:
the field simply stays blank.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Mapping, Optional

from validation import rules
from validation.rules import NumericRule, validate_value
from validation.units import convert, format_decimal
from workshop.keys import SharedKey
from workshop.ledger import ResultsLedger
from workshop.session import ResetBus

logger = logging.getLogger(__name__)

Estimator = Callable[[ResultsLedger], Optional[float]]


@dataclass(frozen=True)
class PrefillField:
    """A screen field that can be filled from the ledger.

    *keys* are tried in order; the first one that resolves wins. When none
    resolves and *estimate* is set, its result is used instead.
    """

    name: str
    keys: tuple[SharedKey, ...]
    rule: NumericRule
    canonical_unit: str
    decimals: int = 2
    # display unit -> decimals, overrides *decimals*
    decimals_by_unit: Mapping[str, int] = field(default_factory=dict)
    estimate: Optional[Estimator] = None

    def decimals_for(self, unit: str) -> int:
        return self.decimals_by_unit.get(unit, self.decimals)


@dataclass
class PrefillOutcome:
    values: dict[str, str] = field(default_factory=dict)
    estimated: set[str] = field(default_factory=set)
    skipped: bool = False


def _estimate_mpap(ledger: ResultsLedger) -> Optional[float]:
    pasp = ledger.latest_double(SharedKey.PASP_MMHG)
    padp = ledger.latest_double(SharedKey.PADP_MMHG)
    if pasp is None or padp is None:
        return None
    return padp + (pasp - padp) / 3.0


SCREEN_FIELDS: dict[str, tuple[PrefillField, ...]] = {
    "svr": (
        PrefillField("map", (SharedKey.MAP_MMHG,), rules.MAP_RULE, "mmHg", decimals=0),
        PrefillField("cvp", (SharedKey.CVP_MMHG,), rules.CVP_RULE, "mmHg", decimals=0),
        PrefillField("co", (SharedKey.CO_LMIN,), rules.CO_RULE, "L/min", decimals=2),
    ),
    "cpo": (
        PrefillField(
            "map", (SharedKey.MAP_MMHG,), rules.CPO_MAP_RULE, "mmHg",
            decimals=0, decimals_by_unit={"kPa": 1},
        ),
        PrefillField("co", (SharedKey.CO_LMIN,), rules.CO_RULE, "L/min", decimals=2),
        PrefillField("bsa", (SharedKey.BSA_M2,), rules.BSA_RULE, "m2", decimals=2),
    ),
    "pvr": (
        PrefillField(
            "mpap", (SharedKey.MPAP_MMHG,), rules.MPAP_RULE, "mmHg",
            decimals=0, estimate=_estimate_mpap,
        ),
        PrefillField("pawp", (SharedKey.PAWP_MMHG,), rules.PAWP_RULE, "mmHg", decimals=0),
        PrefillField("co", (SharedKey.CO_LMIN,), rules.CO_RULE, "L/min", decimals=2),
    ),
    "papi": (
        PrefillField("pasp", (SharedKey.PASP_MMHG,), rules.PASP_RULE, "mmHg", decimals=0),
        PrefillField("padp", (SharedKey.PADP_MMHG,), rules.PADP_RULE, "mmHg", decimals=0),
        PrefillField("rap", (SharedKey.RAP_MMHG, SharedKey.CVP_MMHG), rules.RAP_RULE, "mmHg", decimals=0),
    ),
}


class PrefillAdopter:
    """Per-screen prefill, attempted at most once per reset tick."""

    def __init__(
        self,
        ledger: ResultsLedger,
        fields: tuple[PrefillField, ...],
        reset_bus: Optional[ResetBus] = None,
    ) -> None:
        self._ledger = ledger
        self._fields = fields
        self._reset_bus = reset_bus
        self._attempted = False
        self._seen_tick = reset_bus.tick if reset_bus is not None else 0

    @classmethod
    def for_screen(
        cls, screen: str, ledger: ResultsLedger, reset_bus: Optional[ResetBus] = None,
    ) -> PrefillAdopter:
        try:
            fields = SCREEN_FIELDS[screen]
        except KeyError:
            raise KeyError(f"No prefill fields defined for screen '{screen}'") from None
        return cls(ledger, fields, reset_bus)

    @property
    def attempted(self) -> bool:
        self._sync_reset()
        return self._attempted

    def reset(self) -> None:
        """Local reset (e.g. the screen's own clear button)."""
        self._attempted = False

    def run(
        self,
        local_values: Mapping[str, str],
        display_units: Optional[Mapping[str, str]] = None,
    ) -> PrefillOutcome:
        """Return the values to write into the screen's blank fields.

        A second call before the next session reset returns a skipped outcome.
        """
        self._sync_reset()
        if self._attempted:
            return PrefillOutcome(skipped=True)
        self._attempted = True

        units = display_units or {}
        outcome = PrefillOutcome()
        for f in self._fields:
            if (local_values.get(f.name) or "").strip():
                continue
            adopted = self._adopt(f, units.get(f.name, f.canonical_unit))
            if adopted is None:
                continue
            text, estimated = adopted
            outcome.values[f.name] = text
            if estimated:
                outcome.estimated.add(f.name)
        return outcome

    def _adopt(self, f: PrefillField, display_unit: str) -> Optional[tuple[str, bool]]:
        value: Optional[float] = None
        estimated = False
        for key in f.keys:
            value = self._ledger.latest_double(key)
            if value is not None:
                break
        if value is None and f.estimate is not None:
            value = f.estimate(self._ledger)
            estimated = value is not None
        if value is None:
            return None

        if validate_value(value, f.rule).is_error:
            logger.debug("Prefill of '%s' rejected by validation", f.name)
            return None

        try:
            shown = convert(value, f.canonical_unit, display_unit)
        except ValueError:
            logger.debug("Prefill of '%s' skipped: cannot show in %s", f.name, display_unit)
            return None
        return format_decimal(shown, f.decimals_for(display_unit)), estimated

    def _sync_reset(self) -> None:
        if self._reset_bus is None:
            return
        tick = self._reset_bus.tick
        if tick != self._seen_tick:
            self._seen_tick = tick
            self._attempted = False
