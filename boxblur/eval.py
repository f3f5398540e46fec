import dataclasses
import math
import os
import re
import sys
import time
from pathlib import Path
from typing import Any, Optional

import numpy as np
import torch

from boxblur.device import Stopwatch, allocate, fill_uniform, free, to_host
from boxblur.errors import Failure, PreconditionViolation, ResourceFailure
from boxblur.reference import check_implementation, generate_input
from boxblur.submission import blur, custom_kernel, fill, resolve_backend
from boxblur.task import BlurConfig, TestSpec
from boxblur.utils import get_device, set_seed

EXIT_USAGE = 2
EXIT_CHECK_FAILED = 112
EXIT_BAD_TEST_FILE = 113
EXIT_RESOURCE_FAILURE = 114
EXIT_BAD_CONFIG = 115

DUMP_THRESHOLD = 64


class ReportOutput:
    def __init__(self, fd: Optional[int] = None):
        self._owned = fd is not None
        self.file = os.fdopen(fd, 'w') if self._owned else sys.stdout

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._owned:
            self.file.close()

    def print(self, *args, **kwargs):
        print(*args, **kwargs, file=self.file, flush=True)

    def log(self, key, value):
        self.print(f"{key}: {value}")


@dataclasses.dataclass
class TestCase:
    args: dict
    spec: str


def get_test_cases(file_name: str) -> list[TestCase]:
    try:
        content = Path(file_name).read_text()
    except Exception as E:
        print(f"Could not open test file`{file_name}`: {E}", file=sys.stderr)
        sys.exit(EXIT_BAD_TEST_FILE)

    tests = []
    match = r"\s*([a-zA-Z]+):\s*([a-zA-Z]+|[+-]?[0-9]+)\s*"
    for line in content.splitlines():
        if not line.strip():
            continue
        case = {}
        for part in line.split(";"):
            matched = re.fullmatch(match, part)
            if not matched:
                print(f"invalid test case: '{line}': '{part}'", file=sys.stderr)
                sys.exit(EXIT_BAD_TEST_FILE)
            key = matched[1]
            val = matched[2]
            try:
                val = int(val)
            except ValueError:
                pass

            case[key] = val
        problem = _check_test_case(case)
        if problem:
            print(f"invalid test case: '{line}': {problem}", file=sys.stderr)
            sys.exit(EXIT_BAD_TEST_FILE)
        tests.append(TestCase(spec=line, args=case))

    return tests


def _check_test_case(case: dict) -> str:
    expected = set(TestSpec.__annotations__)
    if set(case) != expected:
        unknown = sorted(set(case) - expected)
        missing = sorted(expected - set(case))
        return f"unknown keys {unknown}, missing keys {missing}"
    for key, val in case.items():
        if not isinstance(val, int):
            return f"'{key}' must be an integer, got '{val}'"
    if case["width"] <= 0 or case["height"] <= 0:
        return f"image must be non-empty, got {case['width']}x{case['height']}"
    return ''


def _synchronize(device: torch.device):
    if device.type == "cuda":
        torch.cuda.synchronize(device)


def warm_up(test: TestCase, config: BlurConfig):
    data = generate_input(**test.args, device=config.device)
    device = data[0].device
    start = time.perf_counter()
    while time.perf_counter() - start < 0.2:
        custom_kernel(data, backend=config.backend)
        _synchronize(device)


@dataclasses.dataclass
class Stats:
    runs: int
    mean: float
    std: float
    err: float
    best: float
    worst: float


def calculate_stats(durations: list[int]):
    """
    Calculate statistical data from a list of durations.

    @param durations: A list of durations in nanoseconds.
    @return: A Stats object containing the number of runs, mean, standard deviation, error, best, and worst durations.
    """
    runs = len(durations)
    total = sum(durations)
    best = min(durations)
    worst = max(durations)

    avg = total / runs
    if runs > 1:
        variance = sum(map(lambda x: (x - avg)**2, durations))
        std = math.sqrt(variance / (runs - 1))
    else:
        std = 0.0
    err = std / math.sqrt(runs)

    return Stats(runs=runs, mean=avg, std=std, err=err, best=float(best),
                 worst=float(worst))


def run_testing(logger: ReportOutput, tests: list[TestCase], config: BlurConfig):
    """
    Blurs every test case with the configured backend and checks it against the reference.

    @param logger: A ReportOutput object used for logging test results.
    @param tests: A list of TestCase objects representing the test cases to be executed.
    @param config: The run configuration; selects backend and device.
    @return: 0 if all tests pass, otherwise EXIT_CHECK_FAILED.
    """
    passed = True
    logger.log("test-count", len(tests))
    for idx, test in enumerate(tests):
        logger.log(f"test.{idx}.spec", test.spec)

        data = generate_input(**test.args, device=config.device)
        device = data[0].device
        _synchronize(device)
        submission_output = custom_kernel(data, backend=config.backend)
        _synchronize(device)
        error = check_implementation(data, submission_output)
        if error:
            logger.log(f"test.{idx}.status", "fail")
            logger.log(f"test.{idx}.error", error)
            passed = False
        else:
            logger.log(f"test.{idx}.status", "pass")

    if passed:
        logger.log("check", "pass")
        return 0
    else:
        logger.log("check", "fail")
        return EXIT_CHECK_FAILED


def benchmark(test: TestCase, config: BlurConfig, max_repeats: int, max_time_ns: float) -> Stats | Any:
    """
    For a particular test case, check correctness once and grab runtime results.

    @param test: TestCase object.
    @param config: The run configuration; selects backend and device.
    @param max_repeats: Number of trials to repeat.
    @param max_time_ns: Timeout time in nanoseconds.
    @return: A Stats object for this particular benchmark case or an error if the test fails.
    """
    durations = []
    data = generate_input(**test.args, device=config.device)
    device = data[0].device
    # one obligatory correctness check; also triggers kernel compilation for the given shape
    output = custom_kernel(data, backend=config.backend)
    error = check_implementation(data, output)
    if error:
        return error

    # at most max_repeats runs and at least 3; stop early once the relative error
    # of the mean drops below 1% or the total time exceeds max_time_ns
    for i in range(max_repeats):
        _synchronize(device)
        start = time.perf_counter_ns()
        output = custom_kernel(data, backend=config.backend)
        _synchronize(device)
        end = time.perf_counter_ns()

        del output
        durations.append(end - start)

        if i > 1:
            stats = calculate_stats(durations)
            if stats.err / stats.mean < 0.01 or stats.mean * stats.runs > max_time_ns:
                break

    return calculate_stats(durations)


def run_benchmarking(logger: ReportOutput, tests: list[TestCase], config: BlurConfig):
    """
    Times the configured backend on every test case and logs runtimes.

    @param logger: A ReportOutput object used for logging benchmark results.
    @param tests: A list of TestCase objects representing the test cases to be benchmarked.
    @param config: The run configuration; selects backend and device.
    @return: 0 if all benchmarks pass, otherwise EXIT_CHECK_FAILED.
    """
    warm_up(tests[0], config)
    passed = True
    logger.log("benchmark-count", len(tests))
    for idx, test in enumerate(tests):
        logger.log(f"benchmark.{idx}.spec", test.spec)
        result = benchmark(test, config, 100, 10e9)
        if isinstance(result, Stats):
            for field in dataclasses.fields(Stats):
                logger.log(f"benchmark.{idx}.{field.name}", getattr(result, field.name))
        else:
            passed = False
            logger.log(f"benchmark.{idx}.status", "fail")
            logger.log(f"benchmark.{idx}.error", result)

    if passed:
        logger.log("check", "pass")
        return 0
    else:
        logger.log("check", "fail")
        return EXIT_CHECK_FAILED


@dataclasses.dataclass
class BlurRun:
    source: torch.Tensor  # host copy
    blurred: torch.Tensor  # host copy
    elapsed_ms: float
    width: int
    height: int
    backend: str
    device: str

    @property
    def elapsed_seconds(self) -> float:
        return self.elapsed_ms / 1e3


def run_blur(config: BlurConfig) -> BlurRun | Failure:
    """
    One end-to-end run: synthesize, blur under the stopwatch, bring both images back.

    Only the blur launch is timed. Resource failures stop the run and come back
    as a Failure instead of raising.
    """
    try:
        device = get_device(config.device)
        backend = resolve_backend(config.backend, device)

        src = allocate(config.numel, device)
        fill_uniform(src, config.seed)
        dst = allocate(config.numel, device)
        fill(dst, 0.0, config.width, config.height, backend=backend)
        _synchronize(device)

        stopwatch = Stopwatch(device)
        stopwatch.start()
        blur(src, config.width, config.height, dst=dst, backend=backend,
             tile_width=config.tile_width, tile_height=config.tile_height)
        stopwatch.stop()

        source, blurred = to_host(src), to_host(dst)
        free(src)
        free(dst)
    except ResourceFailure as e:
        return Failure.from_exception(e)

    return BlurRun(source=source, blurred=blurred, elapsed_ms=stopwatch.elapsed_millis(),
                   width=config.width, height=config.height, backend=backend, device=str(device))


def format_image(image: torch.Tensor, width: int, height: int, full: bool = False) -> str:
    threshold = sys.maxsize if full else DUMP_THRESHOLD
    return np.array2string(image.reshape(height, width).numpy(), precision=4, threshold=threshold,
                           max_line_width=120)


def report(logger: ReportOutput, run: BlurRun, full: bool = False):
    logger.log("width", run.width)
    logger.log("height", run.height)
    logger.log("backend", run.backend)
    logger.log("device", run.device)
    logger.print("source:")
    logger.print(format_image(run.source, run.width, run.height, full))
    logger.print("blurred:")
    logger.print(format_image(run.blurred, run.width, run.height, full))
    logger.log("elapsed-seconds", f"{run.elapsed_seconds:.6f}")


def main(argv: Optional[list[str]] = None):
    argv = sys.argv[1:] if argv is None else argv
    mode = argv[0] if argv else "run"
    if mode not in ("run", "test", "benchmark"):
        print(f"usage: boxblur [run | test <cases> | benchmark <cases>], got mode '{mode}'", file=sys.stderr)
        return EXIT_USAGE
    if mode != "run" and len(argv) < 2:
        print(f"usage: boxblur {mode} <cases>", file=sys.stderr)
        return EXIT_USAGE

    try:
        config = BlurConfig.from_env()
    except PreconditionViolation as e:
        print(f"invalid configuration: {e}", file=sys.stderr)
        return EXIT_BAD_CONFIG

    fd = os.getenv("BOXBLUR_FD")
    with ReportOutput(int(fd) if fd else None) as logger:
        set_seed(config.seed)

        if mode == "run":
            try:
                result = run_blur(config)
            except PreconditionViolation as e:
                print(f"invalid configuration: {e}", file=sys.stderr)
                return EXIT_BAD_CONFIG
            if isinstance(result, Failure):
                logger.log("error", str(result))
                print(f"resource failure: {result}", file=sys.stderr)
                return EXIT_RESOURCE_FAILURE
            report(logger, result, full=config.dump_full)
            return 0

        tests = get_test_cases(argv[1])
        if not tests:
            print(f"no test cases in `{argv[1]}`", file=sys.stderr)
            return EXIT_BAD_TEST_FILE
        try:
            if mode == "test":
                return run_testing(logger, tests, config)
            return run_benchmarking(logger, tests, config)
        except ResourceFailure as e:
            logger.log("error", str(Failure.from_exception(e)))
            return EXIT_RESOURCE_FAILURE


if __name__ == "__main__":
    sys.exit(main())
