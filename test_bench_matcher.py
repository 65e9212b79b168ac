import pytest

from nccmatch import bench_matcher


def test_percentile_interpolates():
    vals = [1.0, 2.0, 3.0, 4.0]
    assert bench_matcher._percentile(vals, 0) == 1.0
    assert bench_matcher._percentile(vals, 100) == 4.0
    assert bench_matcher._percentile(vals, 50) == pytest.approx(2.5)
    assert bench_matcher._percentile([], 95) == 0.0


def test_unknown_case_is_rejected():
    with pytest.raises(ValueError):
        bench_matcher._resolve_cases(["no_such_case"])


@pytest.mark.e2e
def test_single_case_run(capsys):
    timings = bench_matcher.main(
        ["--iterations", "1", "--repeats", "2", "--warmup", "0", "--case", "small_upright"]
    )

    assert list(timings) == ["small_upright"]
    assert len(timings["small_upright"]) == 2
    out = capsys.readouterr().out
    assert "Runs: 2" in out
    assert "overall: median" in out
