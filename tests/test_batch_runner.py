from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from batch.runner import hand_off_interference, reduce_acquisition, run_batch
from infra.config import ReductionOptions
from tests.conftest import acquisition_frame, make_model, make_series

ON_PEAK = [110.0, 120.0, 130.0, 140.0]


def _options(**kw):
    base = dict(collector_type="ion_counter", fit_type="MEAN", mean_solver="closed_form")
    base.update(kw)
    return ReductionOptions(**base)


def _pair(bg, on, acf=None):
    return make_series(bg, acf=acf), make_series(on, 5000.0)


def test_failed_channel_does_not_stop_the_others(caplog):
    acquisitions = {
        "Pb206": _pair([10.0] * 4, ON_PEAK),
        "Pb207": _pair([10.0] * 4, ON_PEAK, acf=[1.0, -1.0, 1.0, 1.0]),
        "U238": _pair([20.0] * 4, [220.0, 230.0, 240.0, 250.0]),
    }
    outcomes = reduce_acquisition(acquisitions, _options())
    by_name = {o.channel: o for o in outcomes}
    assert [o.channel for o in outcomes] == ["Pb206", "Pb207", "U238"]
    assert not by_name["Pb207"].ok
    assert by_name["Pb207"].error
    assert by_name["Pb206"].ok and by_name["Pb206"].has_covariance
    assert by_name["U238"].ok
    np.testing.assert_allclose(by_name["U238"].model.on_peak.corrected, [200.0, 210.0, 220.0, 230.0])
    assert "Pb207" in caplog.text


def test_interference_correction_added_to_target_once():
    acquisitions = {
        "Pb204": _pair([5.0, 6.0, 5.0, 6.0], [50.0, 52.0, 51.0, 53.0]),
        "Hg202": _pair([2.0] * 4, [20.0, 21.0, 22.0, 23.0]),
    }
    outcomes = reduce_acquisition(acquisitions, _options())
    models = {o.channel: o.model for o in outcomes}
    hg, pb = models["Hg202"], models["Pb204"]
    assert all(o.ok for o in outcomes)
    np.testing.assert_allclose(pb.variance_model.diagonal(), pb.variance_diagonal + hg.variance_diagonal)
    assert pb.correction_covariance is None
    np.testing.assert_allclose(hg.variance_model.diagonal(), hg.variance_diagonal)


def test_interference_skipped_on_layout_mismatch():
    hg = make_model([2.0] * 3, [20.0] * 4, channel="Hg202")
    pb = make_model([5.0] * 4, [50.0] * 4, channel="Pb204")
    hg.generate()
    assert not hand_off_interference(hg, pb)
    assert pb.correction_covariance is None


def test_run_batch_writes_summary(tmp_path: Path, no_blank_lines):
    frame = acquisition_frame(
        {
            "Pb206": ([10.0, 11.0, 9.0, 10.0], ON_PEAK),
            "Pb204": ([1.0, 2.0, 1.0, 2.0], [8.0, 9.0, 10.0, 11.0]),
        }
    )
    data = tmp_path / "run1.csv"
    frame.to_csv(data, index=False)
    out = tmp_path / "out"
    cfg = {"collector": {"type": "ion_counter"}, "fit": {"mean_solver": "closed_form"}}

    lines = []
    ok, total = run_batch([str(data)], cfg, output_dir=out, save_series=True, log=lines.append)
    assert (ok, total) == (2, 2)
    assert len(lines) == 2

    summary = pd.read_csv(out / "run1_summary.csv")
    assert list(summary["channel"]) == ["Pb204", "Pb206"]
    assert set(summary["file"]) == {"run1.csv"}
    assert summary["ok"].all()
    assert summary["has_covariance"].all()
    assert (summary["fit_type"] == "MEAN").all()
    assert no_blank_lines(out / "run1_summary.csv")

    series = pd.read_csv(out / "run1_series.csv")
    assert len(series) == 16
    assert set(series["phase"]) == {"background", "on_peak"}


def test_run_batch_skips_unreadable_files(tmp_path: Path):
    bad = tmp_path / "bad.csv"
    bad.write_text("channel,time_ms\nPb206,0\n")
    good = tmp_path / "good.csv"
    acquisition_frame({"Pb206": ([10.0] * 4, ON_PEAK)}).to_csv(good, index=False)
    ok, total = run_batch([str(tmp_path / "*.csv")], {"collector": {"type": "ion_counter"}})
    assert (ok, total) == (1, 1)
    assert (tmp_path / "good_summary.csv").exists()
    assert not (tmp_path / "bad_summary.csv").exists()


def test_run_batch_without_matches_raises(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        run_batch([str(tmp_path / "*.csv")], {})
