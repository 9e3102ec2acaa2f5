from pathlib import Path
import sys

import numpy as np
import pandas as pd
import pytest

# ensure project root importable
sys.path.append(str(Path(__file__).resolve().parents[1]))

from core.collectors import IonCounterCollector  # noqa: E402
from core.intensity_model import RawIntensityModel  # noqa: E402
from core.series import AcquisitionSeries  # noqa: E402


# deterministic RNG fixture
@pytest.fixture
def rng():
    return np.random.default_rng(123)


def make_series(values, start_ms=0.0, period_ms=1000.0, active=None, acf=None):
    values = np.asarray(values, dtype=float)
    times = start_ms + period_ms * np.arange(values.size)
    return AcquisitionSeries(values, times, active=active, analog_correction_factors=acf)


def make_model(
    background,
    on_peak,
    *,
    channel="Pb206",
    period_ms=1000.0,
    on_active=None,
    bg_active=None,
    collector=None,
    **kwargs,
):
    """Ion-counter channel with on-peak samples following the background."""

    bg = make_series(background, 0.0, period_ms, active=bg_active)
    on = make_series(on_peak, period_ms * (len(bg) + 1), period_ms, active=on_active)
    return RawIntensityModel(
        channel,
        bg,
        on,
        period_ms,
        collector if collector is not None else IonCounterCollector(),
        **kwargs,
    )


@pytest.fixture
def model_factory():
    return make_model


def acquisition_frame(channels: dict, period_ms=1000.0) -> pd.DataFrame:
    """Long-format acquisition table: ``{name: (background, on_peak)}``."""

    rows = []
    for name, (bg, on) in channels.items():
        for i, v in enumerate(bg):
            rows.append({"channel": name, "phase": "background", "time_ms": i * period_ms, "intensity": v})
        for i, v in enumerate(on):
            rows.append(
                {
                    "channel": name,
                    "phase": "on_peak",
                    "time_ms": (len(bg) + 1 + i) * period_ms,
                    "intensity": v,
                }
            )
    return pd.DataFrame(rows)


# helper to ensure CSVs have no blank lines

@pytest.fixture
def no_blank_lines():
    def _check(path: Path) -> bool:
        text = Path(path).read_text()
        return "\n\n" not in text
    return _check
