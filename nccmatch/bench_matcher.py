#!/usr/bin/env python3

import argparse
import math
import statistics
import time
from typing import Dict, List, Optional, Tuple

from nccmatch import matcher, ncc, synthetic

# (name, pattern size, scene size, rotation in degrees, pyramid depth)
CaseSpec = Tuple[str, int, int, float, int]

CASE_MATRIX: List[CaseSpec] = [
    ("small_upright", 48, 256, 0.0, 2),
    ("small_rotated", 48, 256, 30.0, 2),
    ("medium_rotated", 64, 512, -70.0, 3),
]


def _percentile(sorted_vals: List[float], p: float) -> float:
    if not sorted_vals:
        return 0.0
    k = (len(sorted_vals) - 1) * (p / 100.0)
    f = math.floor(k)
    c = math.ceil(k)
    if f == c:
        return sorted_vals[int(k)]
    return sorted_vals[f] * (c - k) + sorted_vals[c] * (k - f)


def _format_ms(value_s: float) -> str:
    return f"{value_s * 1000.0:.2f} ms"


def _resolve_cases(selected: List[str]) -> List[CaseSpec]:
    if not selected:
        return list(CASE_MATRIX)
    by_name = {spec[0]: spec for spec in CASE_MATRIX}
    specs = []
    for name in selected:
        item = by_name.get(name)
        if not item:
            raise ValueError(
                f"Unknown case '{name}'. Available: {', '.join(by_name)}"
            )
        specs.append(item)
    return specs


def _run_benchmark(
    cases: List[CaseSpec],
    options: matcher.MatchOptions,
    iterations: int,
    repeats: int,
    warmup: int,
) -> Dict[str, List[float]]:
    timings: Dict[str, List[float]] = {spec[0]: [] for spec in cases}
    prepared = []
    for name, pattern_size, scene_size, angle, depth in cases:
        pattern = synthetic.textured_pattern(pattern_size, pattern_size, seed=7)
        scene, _ = synthetic.make_scene(
            pattern,
            (scene_size, scene_size),
            (((scene_size / 2.0, scene_size / 2.0), angle),),
        )
        m = matcher.Matcher()
        m.learn(pattern, pyramid_depth=depth)
        prepared.append((name, m, scene))

    def _run_cases(record: bool) -> None:
        for name, m, scene in prepared:
            start = time.perf_counter()
            m.match(scene, options)
            if record:
                timings[name].append(time.perf_counter() - start)

    for _ in range(warmup):
        _run_cases(record=False)

    for _ in range(repeats):
        for _ in range(iterations):
            _run_cases(record=True)

    return timings


def _summarize(label: str, values: List[float]) -> str:
    sorted_vals = sorted(values)
    return (
        f"{label}: median {_format_ms(statistics.median(sorted_vals))}, "
        f"mean {_format_ms(statistics.mean(sorted_vals))}, "
        f"p95 {_format_ms(_percentile(sorted_vals, 95))}, "
        f"min {_format_ms(sorted_vals[0])}, "
        f"max {_format_ms(sorted_vals[-1])}"
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Benchmark matcher runtime.")
    parser.add_argument(
        "--iterations",
        type=int,
        default=5,
        help="Iterations per repeat (per case).",
    )
    parser.add_argument(
        "--repeats",
        type=int,
        default=3,
        help="Repeat count for the iteration loop.",
    )
    parser.add_argument(
        "--warmup",
        type=int,
        default=1,
        help="Warmup passes before timing.",
    )
    parser.add_argument(
        "--case",
        action="append",
        default=[],
        help="Case name to benchmark (repeatable).",
    )
    parser.add_argument(
        "--angle-step",
        type=float,
        default=10.0,
        help="Coarse angle step in degrees.",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=0,
        help="Thread pool size for the angle sweep and refinement.",
    )
    parser.add_argument(
        "--kernel",
        choices=sorted(ncc.KERNELS),
        default="opencv",
        help="Correlation kernel.",
    )
    parser.add_argument(
        "--sub-pixel",
        action="store_true",
        help="Enable sub-pixel refinement.",
    )
    parser.add_argument(
        "--fast",
        action="store_true",
        help="Stop refinement one pyramid level early.",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> Dict[str, List[float]]:
    args = build_parser().parse_args(argv)
    options = matcher.MatchOptions(
        angle_step=args.angle_step,
        score_threshold=0.7,
        max_match_count=1,
        sub_pixel=args.sub_pixel,
        fast_mode=args.fast,
        workers=args.workers,
        kernel=args.kernel,
    ).validate()

    cases = _resolve_cases(args.case)
    timings = _run_benchmark(
        cases=cases,
        options=options,
        iterations=args.iterations,
        repeats=args.repeats,
        warmup=args.warmup,
    )

    total_runs = sum(len(v) for v in timings.values())
    print(
        f"Runs: {total_runs} | cases: {len(cases)} | "
        f"iterations: {args.iterations} | repeats: {args.repeats} | warmup: {args.warmup}"
    )
    print(
        "options:",
        f"angle_step={options.angle_step}",
        f"workers={options.workers}",
        f"kernel={options.kernel}",
        f"sub_pixel={options.sub_pixel}",
        f"fast={options.fast_mode}",
    )

    combined: List[float] = []
    for name, values in timings.items():
        combined.extend(values)
        print(_summarize(name, values))

    if combined:
        print(_summarize("overall", combined))
    return timings


if __name__ == "__main__":
    main()
