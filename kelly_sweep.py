import argparse
from copy import deepcopy
import itertools
import json
import math
import multiprocessing
import numbers
import os
import queue as queue_mod
import sys
import time

import numpy as np

from strategy_compiler import CompileError, compile_strategy, validate_param_names


DEFAULT_STRATEGY_SOURCE = """\
# Kelly coin flip: 50% chance to win 80%, 50% chance to lose 50%, two bets.
win_probability = 0.5
mul1 = 0.8 if random.random() < win_probability else -0.5
mul2 = 0.8 if random.random() < win_probability else -0.5
1 + mul1 * bet + mul2 * bet2
"""

DEFAULT_CONFIG = {
    "parameters": [
        {"name": "bet", "min": 0.0, "max": 1.0, "step": 0.1},
        {"name": "bet2", "min": 0.0, "max": 1.0, "step": 0.1},
    ],
    "strategy": {
        "source": DEFAULT_STRATEGY_SOURCE,
        # None means the range names, in range order.
        "param_names": None,
    },
    "simulation": {
        "num_experiments": 100,
        "num_rounds": 5_000,
        "num_threads": 1,
        "seed": None,
        "parallel_enabled": True,
        "parallel_start_method": None,
        "worker_poll_interval_s": 0.25,
        "confirm_grid_size": 50_000,
    },
}

GRID_EPSILON = 1e-7
GRID_DECIMALS = 4
MAX_THREADS = 32


class GridConfigurationError(ValueError):
    pass


class StrategyExecutionError(RuntimeError):
    pass


class WorkerTransportError(RuntimeError):
    pass


def _deep_merge(base, overrides):
    merged = deepcopy(base)
    _deep_merge_in_place(merged, overrides)
    return merged


def _deep_merge_in_place(target, overrides):
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _deep_merge_in_place(target[key], value)
        else:
            target[key] = deepcopy(value)


def _is_int(value):
    return isinstance(value, (int, np.integer)) and not isinstance(value, bool)


def _is_real(value):
    return isinstance(value, numbers.Real) and not isinstance(value, bool)


def _validate_parameter_range(idx, spec):
    label = f"parameters[{idx}]"
    if not isinstance(spec, dict):
        raise GridConfigurationError(f"{label} must be a dict with name, min, max and step.")
    for field in ("name", "min", "max", "step"):
        if field not in spec:
            raise GridConfigurationError(f"{label} missing '{field}'.")

    name = spec["name"]
    try:
        validate_param_names([name])
    except CompileError as exc:
        raise GridConfigurationError(f"{label}.name is not a valid identifier: {name!r}") from exc

    for field in ("min", "max", "step"):
        value = spec[field]
        if not _is_real(value) or not math.isfinite(value):
            raise GridConfigurationError(f"{label}.{field} must be a finite number.")


def validate_config(config):
    for key in ("parameters", "strategy", "simulation"):
        if key not in config:
            raise GridConfigurationError(f"Missing top-level config section '{key}'.")

    parameters = config["parameters"]
    strategy = config["strategy"]
    simulation = config["simulation"]
    if not isinstance(strategy, dict) or not isinstance(simulation, dict):
        raise GridConfigurationError("strategy and simulation sections must be dicts.")

    if not isinstance(parameters, list):
        raise GridConfigurationError("parameters must be a list of ranges.")
    range_names = []
    for idx, spec in enumerate(parameters):
        _validate_parameter_range(idx, spec)
        if spec["name"] in range_names:
            raise GridConfigurationError(f"Duplicate parameter name '{spec['name']}'.")
        range_names.append(spec["name"])

    if not isinstance(strategy.get("source"), str):
        raise GridConfigurationError("strategy.source must be a string.")
    param_names = strategy.get("param_names")
    if param_names is not None:
        if not isinstance(param_names, list) or not all(isinstance(name, str) for name in param_names):
            raise GridConfigurationError("strategy.param_names must be a list of names or None.")
        if len(set(param_names)) != len(param_names):
            raise GridConfigurationError("strategy.param_names must not contain duplicates.")
        if set(param_names) != set(range_names):
            missing = sorted(set(param_names) - set(range_names))
            extra = sorted(set(range_names) - set(param_names))
            raise GridConfigurationError(
                "strategy.param_names must match the parameter ranges "
                f"(no range for {missing}, not declared {extra})."
            )

    for field in ("num_experiments", "num_rounds", "num_threads"):
        if not _is_int(simulation.get(field)) or simulation[field] < 1:
            raise GridConfigurationError(f"simulation.{field} must be an int >= 1.")
    if simulation["num_threads"] > MAX_THREADS:
        raise GridConfigurationError(f"simulation.num_threads must be <= {MAX_THREADS}.")
    seed = simulation.get("seed")
    if seed is not None and (not _is_int(seed) or seed < 0):
        raise GridConfigurationError("simulation.seed must be an int >= 0 or None.")
    if not isinstance(simulation.get("parallel_enabled"), bool):
        raise GridConfigurationError("simulation.parallel_enabled must be a bool.")
    start_method = simulation.get("parallel_start_method")
    if start_method is not None:
        available_methods = multiprocessing.get_all_start_methods()
        if start_method not in available_methods:
            available = ", ".join(available_methods)
            raise GridConfigurationError(
                "simulation.parallel_start_method must be one of "
                f"[{available}] or None."
            )
    poll_interval = simulation.get("worker_poll_interval_s")
    if not _is_real(poll_interval) or poll_interval <= 0:
        raise GridConfigurationError("simulation.worker_poll_interval_s must be > 0.")
    if not _is_int(simulation.get("confirm_grid_size")) or simulation["confirm_grid_size"] < 1:
        raise GridConfigurationError("simulation.confirm_grid_size must be an int >= 1.")


def resolve_param_names(config):
    declared = config["strategy"].get("param_names")
    if declared is not None:
        return list(declared)
    return [spec["name"] for spec in config["parameters"]]


# ---------------------------------------------------------------------------
# Parameter grid


def effective_step(param_range):
    step = float(param_range["step"])
    if step > 0:
        return step
    span = float(param_range["max"]) - float(param_range["min"])
    return span if span > 0 else 1.0


def dimension_size(param_range):
    low = float(param_range["min"])
    high = float(param_range["max"])
    if low > high + GRID_EPSILON:
        return 0
    return int(math.floor((high - low + GRID_EPSILON) / effective_step(param_range))) + 1


def parameter_values(param_range):
    low = float(param_range["min"])
    step = effective_step(param_range)
    return [round(low + k * step, GRID_DECIMALS) for k in range(dimension_size(param_range))]


def grid_size(parameter_ranges):
    return math.prod(dimension_size(spec) for spec in parameter_ranges)


def _iter_grid(parameter_ranges):
    names = [spec["name"] for spec in parameter_ranges]
    axes = [parameter_values(spec) for spec in parameter_ranges]
    for combo in itertools.product(*axes):
        yield dict(zip(names, combo))


def generate_parameter_grid(parameter_ranges):
    """Expand ranges into the cartesian product of parameter tuples.

    The first range varies slowest. Values are computed as ``min + k * step``
    and rounded to ``GRID_DECIMALS`` places. An empty range list gives one
    empty tuple; a range with ``max < min`` gives an empty grid.
    """
    return list(_iter_grid(parameter_ranges))


def preview_grid(parameter_ranges, limit=10):
    dimensions = []
    for spec in parameter_ranges:
        values = parameter_values(spec)
        dimensions.append(
            {
                "name": spec["name"],
                "count": len(values),
                "effective_step": effective_step(spec),
                "first": values[0] if values else None,
                "last": values[-1] if values else None,
            }
        )
    return {
        "grid_size": grid_size(parameter_ranges),
        "dimensions": dimensions,
        "sample": list(itertools.islice(_iter_grid(parameter_ranges), max(0, int(limit)))),
    }


# ---------------------------------------------------------------------------
# Monte Carlo trial


def _coerce_multiplier(value):
    if not _is_real(value):
        return 0.0
    try:
        multiplier = float(value)
    except OverflowError:
        return 0.0
    if not math.isfinite(multiplier):
        return 0.0
    return multiplier


def median_log_wealth(log_outcomes):
    outcomes = np.sort(np.asarray(log_outcomes, dtype=np.float64))
    count = outcomes.size
    if count == 0:
        raise ValueError("Median of an empty outcome set is undefined.")
    mid = count // 2
    if count % 2:
        return float(outcomes[mid])
    lower = outcomes[mid - 1]
    upper = outcomes[mid]
    # One ruined central outcome is enough to call the median ruined.
    if np.isneginf(lower) or np.isneginf(upper):
        return -math.inf
    return float((lower + upper) / 2.0)


def run_trial(params, strategy_fn, simulation, param_names=None):
    names = list(params) if param_names is None else param_names
    args = tuple(params[name] for name in names)
    num_experiments = int(simulation["num_experiments"])
    num_rounds = int(simulation["num_rounds"])

    log_outcomes = np.empty(num_experiments, dtype=np.float64)
    log = math.log
    for experiment in range(num_experiments):
        log_wealth = 0.0
        for _ in range(num_rounds):
            try:
                raw = strategy_fn(*args)
            except Exception as exc:
                raise StrategyExecutionError(
                    f"Runtime error in strategy function: {type(exc).__name__}: {exc}"
                ) from exc
            multiplier = _coerce_multiplier(raw)
            if multiplier <= 0.0:
                log_wealth = -math.inf
                break
            log_wealth += log(multiplier)
        log_outcomes[experiment] = log_wealth

    median_log = median_log_wealth(log_outcomes)
    if median_log == -math.inf:
        growth_rate = -1.0
        terminal_wealth = 0.0
    else:
        with np.errstate(over="ignore"):
            growth_rate = float(np.expm1(median_log / num_rounds))
            terminal_wealth = float(np.exp(median_log))

    return {
        "params": dict(params),
        "median_growth_rate": growth_rate,
        "median_terminal_wealth": terminal_wealth,
    }


# ---------------------------------------------------------------------------
# Work distribution


def partition_grid(grid, num_contexts):
    partitions = [[] for _ in range(num_contexts)]
    for idx, params in enumerate(grid):
        partitions[idx % num_contexts].append(params)
    return partitions


def context_seeds(seed, num_contexts):
    if seed is None:
        return [None] * num_contexts
    children = np.random.SeedSequence(seed).spawn(num_contexts)
    return [int(child.generate_state(1)[0]) for child in children]


def _run_partition(partition, source, param_names, simulation, seed):
    strategy_fn = compile_strategy(source, param_names, seed=seed)
    return [run_trial(params, strategy_fn, simulation, param_names) for params in partition]


def _partition_worker(worker_id, partition, source, param_names, simulation, seed, out_queue):
    try:
        results = _run_partition(partition, source, param_names, simulation, seed)
        out_queue.put({"kind": "result", "worker": worker_id, "results": results})
    except Exception as exc:
        out_queue.put(
            {
                "kind": "error",
                "worker": worker_id,
                "error": str(exc),
                "error_type": type(exc).__name__,
            }
        )


_WORKER_ERROR_TYPES = {
    "CompileError": CompileError,
    "StrategyExecutionError": StrategyExecutionError,
}


def _worker_error(message):
    error_cls = _WORKER_ERROR_TYPES.get(message.get("error_type"), WorkerTransportError)
    return error_cls(f"Worker {message['worker']} error: {message.get('error', 'unknown failure')}")


def _default_parallel_start_method():
    methods = multiprocessing.get_all_start_methods()
    if os.name == "posix" and "fork" in methods:
        return "fork"
    if "spawn" in methods:
        return "spawn"
    return methods[0]


def _resolve_execution_settings(simulation, partitions):
    partition_sizes = [len(partition) for partition in partitions]
    active = sum(1 for size in partition_sizes if size)
    execution = {
        "mode": "single",
        "backend": "inline",
        "num_contexts": len(partitions),
        "workers_used": 1,
        "start_method": None,
        "partition_sizes": partition_sizes,
        "elapsed_s": None,
    }

    if not simulation["parallel_enabled"]:
        return execution
    if active <= 1:
        return execution

    execution["mode"] = "parallel"
    execution["backend"] = "multiprocessing"
    execution["workers_used"] = active
    execution["start_method"] = (
        simulation["parallel_start_method"] or _default_parallel_start_method()
    )
    return execution


def _emit(progress_callback, event, payload):
    if progress_callback is not None:
        progress_callback(event, payload)


def _collect_results_inline(partitions, source, param_names, simulation, seeds, progress_callback):
    collected = []
    for worker_id, partition in enumerate(partitions):
        if not partition:
            continue
        collected.extend(_run_partition(partition, source, param_names, simulation, seeds[worker_id]))
        _emit(progress_callback, "worker_complete", {"worker": worker_id, "results": len(partition)})
    return collected


def _stop_process(process):
    if process.is_alive():
        process.terminate()
    process.join(timeout=2.0)
    if process.is_alive():
        process.kill()
        process.join(timeout=1.0)


def _collect_results_parallel(partitions, source, param_names, simulation, seeds, execution, progress_callback):
    mp_context = multiprocessing.get_context(execution["start_method"])
    poll_interval = float(simulation["worker_poll_interval_s"])
    out_queue = mp_context.Queue()
    processes = {}
    collected = {}

    try:
        for worker_id, partition in enumerate(partitions):
            if not partition:
                continue
            process = mp_context.Process(
                target=_partition_worker,
                args=(worker_id, partition, source, param_names, simulation, seeds[worker_id], out_queue),
                daemon=True,
            )
            try:
                process.start()
            except Exception as exc:
                raise WorkerTransportError(f"Worker {worker_id} failed to start: {exc}") from exc
            processes[worker_id] = process
            _emit(progress_callback, "worker_start", {"worker": worker_id, "pid": process.pid})

        pending = set(processes)
        while pending:
            try:
                message = out_queue.get(timeout=poll_interval)
            except queue_mod.Empty:
                message = None

            if message is None:
                dead = [worker_id for worker_id in sorted(pending) if not processes[worker_id].is_alive()]
                if not dead:
                    continue
                # A worker can exit right after its message reached the pipe.
                try:
                    message = out_queue.get(timeout=poll_interval)
                except queue_mod.Empty:
                    worker_id = dead[0]
                    raise WorkerTransportError(
                        f"Worker {worker_id} exited unexpectedly with code {processes[worker_id].exitcode}."
                    )

            if message["kind"] == "error":
                raise _worker_error(message)
            worker_id = message["worker"]
            collected[worker_id] = message["results"]
            pending.discard(worker_id)
            _emit(progress_callback, "worker_complete", {"worker": worker_id, "results": len(message["results"])})
    finally:
        for process in processes.values():
            _stop_process(process)
            if not process.is_alive():
                process.close()
        out_queue.close()

    merged = []
    for worker_id in sorted(collected):
        merged.extend(collected[worker_id])
    return merged


def distribute_trials(grid, source, param_names, simulation, progress_callback=None):
    """Run one trial per grid tuple across ``simulation["num_threads"]`` contexts.

    Tuples are assigned round-robin by index. Each context compiles its own
    strategy instance with its own seed and walks its slice in order. The
    first failure from any context fails the whole call; no partial results
    are returned. Returns ``(results, execution)``.
    """
    partitions = partition_grid(grid, simulation["num_threads"])
    seeds = context_seeds(simulation.get("seed"), len(partitions))
    execution = _resolve_execution_settings(simulation, partitions)

    t0 = time.perf_counter()
    if execution["mode"] == "parallel":
        results = _collect_results_parallel(
            partitions,
            source,
            param_names,
            simulation,
            seeds,
            execution,
            progress_callback,
        )
    else:
        results = _collect_results_inline(
            partitions,
            source,
            param_names,
            simulation,
            seeds,
            progress_callback,
        )
    execution["elapsed_s"] = time.perf_counter() - t0
    return results, execution


# ---------------------------------------------------------------------------
# Result summaries


def select_best_result(results):
    best = None
    for result in results:
        if best is None or result["median_growth_rate"] > best["median_growth_rate"]:
            best = result
    return best


def rank_results(results, top_k=None):
    ranked = sorted(results, key=lambda item: item["median_growth_rate"], reverse=True)
    if top_k is not None:
        ranked = ranked[:top_k]
    return ranked


def varied_parameters(parameter_ranges):
    return [spec["name"] for spec in parameter_ranges if spec["max"] > spec["min"]]


def growth_surface(results, x_name, y_name):
    x_values = sorted({result["params"][x_name] for result in results})
    y_values = sorted({result["params"][y_name] for result in results})
    x_index = {value: idx for idx, value in enumerate(x_values)}
    y_index = {value: idx for idx, value in enumerate(y_values)}

    z = np.full((len(y_values), len(x_values)), np.nan, dtype=np.float64)
    for result in results:
        params = result["params"]
        z[y_index[params[y_name]], x_index[params[x_name]]] = result["median_growth_rate"]
    return {"x_name": x_name, "y_name": y_name, "x": x_values, "y": y_values, "z": z}


def _format_params(params):
    if not params:
        return "(no parameters)"
    return ", ".join(f"{name}={value:g}" for name, value in params.items())


def run_kelly_sweep(config=None, verbose=True, progress_callback=None):
    merged_config = _deep_merge(DEFAULT_CONFIG, config or {})
    validate_config(merged_config)

    parameters = merged_config["parameters"]
    simulation = merged_config["simulation"]
    source = merged_config["strategy"]["source"]
    param_names = resolve_param_names(merged_config)

    # Fail fast on a broken script before any grid or worker is set up.
    compile_strategy(source, param_names)

    _emit(
        progress_callback,
        "run_start",
        {
            "param_names": param_names,
            "num_experiments": simulation["num_experiments"],
            "num_rounds": simulation["num_rounds"],
            "num_threads": simulation["num_threads"],
        },
    )

    grid = generate_parameter_grid(parameters)
    _emit(progress_callback, "grid_generated", {"grid_size": len(grid)})

    if verbose:
        print(
            f"Sweeping {len(grid):,} parameter tuples x {simulation['num_experiments']:,} experiments "
            f"x {simulation['num_rounds']:,} rounds on {simulation['num_threads']} context(s)...\n"
        )

    results, execution = distribute_trials(grid, source, param_names, simulation, progress_callback)
    best = select_best_result(results)
    top_results = rank_results(results, top_k=10)

    result = {
        "results": results,
        "best": best,
        "grid_size": len(grid),
        "param_names": param_names,
        "varied_parameters": varied_parameters(parameters),
        "top_results": top_results,
        "execution": execution,
    }

    _emit(
        progress_callback,
        "run_complete",
        {
            "grid_size": len(grid),
            "best_growth_rate": None if best is None else best["median_growth_rate"],
            "elapsed_s": execution["elapsed_s"],
        },
    )

    if verbose:
        print(f"{'Parameters':>40} | {'Median Growth / Round':>22} | {'Median Terminal Wealth':>24}")
        print("-" * 92)
        for item in top_results:
            print(
                f"{_format_params(item['params']):>40} | "
                f"{item['median_growth_rate'] * 100:21.4f}% | "
                f"{item['median_terminal_wealth']:24.6g}"
            )
        print("-" * 92)
        print(
            f"Execution mode:                        {execution['mode']} "
            f"({execution['backend']}, workers={execution['workers_used']})"
        )
        if execution["start_method"] is not None:
            print(f"Parallel start method:                 {execution['start_method']}")
        print(f"Elapsed (s):                           {execution['elapsed_s']:.2f}")
        if best is None:
            print("The grid is empty; nothing was simulated.")
        else:
            print(f"Best parameters:                       {_format_params(best['params'])}")
            print(f"Median growth rate per round:          {best['median_growth_rate'] * 100:.4f}%")
            print(f"Median terminal wealth:                {best['median_terminal_wealth']:.6g}")

    return result


# ---------------------------------------------------------------------------
# Command line


def _parse_param_arg(text):
    parts = text.split(":")
    if len(parts) != 4:
        raise argparse.ArgumentTypeError(f"expected name:min:max:step, got {text!r}")
    name, low, high, step = parts
    try:
        return {"name": name, "min": float(low), "max": float(high), "step": float(step)}
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid number in {text!r}") from exc


def _build_cli_config(args):
    config = {}
    if args.config:
        with open(args.config, "r", encoding="utf-8") as handle:
            loaded = json.load(handle)
        if not isinstance(loaded, dict):
            raise GridConfigurationError("Config file must contain a JSON object.")
        config = loaded

    if args.strategy:
        with open(args.strategy, "r", encoding="utf-8") as handle:
            config.setdefault("strategy", {})["source"] = handle.read()
    if args.param:
        config["parameters"] = args.param
        config.setdefault("strategy", {})["param_names"] = None

    simulation = config.setdefault("simulation", {})
    for option, key in (
        ("threads", "num_threads"),
        ("experiments", "num_experiments"),
        ("rounds", "num_rounds"),
        ("seed", "seed"),
    ):
        value = getattr(args, option)
        if value is not None:
            simulation[key] = value
    return config


def _confirm_large_grid(count, threshold):
    if count <= threshold:
        return True
    answer = input(f"This will run {count:,} parameter combinations. Continue? [y/N] ")
    return answer.strip().lower() in ("y", "yes")


def main(argv=None):
    parser = argparse.ArgumentParser(description="Sweep a strategy's parameters for the best median growth rate.")
    parser.add_argument("--config", help="JSON file with parameters/strategy/simulation overrides.")
    parser.add_argument("--strategy", help="File holding the strategy function body.")
    parser.add_argument("--param", action="append", type=_parse_param_arg, help="Range as name:min:max:step.")
    parser.add_argument("--threads", type=int)
    parser.add_argument("--experiments", type=int)
    parser.add_argument("--rounds", type=int)
    parser.add_argument("--seed", type=int)
    parser.add_argument("--preview", action="store_true", help="Print the grid size and a sample, then exit.")
    parser.add_argument("--check", action="store_true", help="Compile the strategy, then exit.")
    parser.add_argument("--yes", action="store_true", help="Skip the large grid confirmation.")
    parser.add_argument("--json", action="store_true", help="Print the full result as JSON.")
    args = parser.parse_args(argv)

    try:
        merged_config = _deep_merge(DEFAULT_CONFIG, _build_cli_config(args))
        validate_config(merged_config)
    except (OSError, json.JSONDecodeError, GridConfigurationError) as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2

    if args.preview:
        print(json.dumps(preview_grid(merged_config["parameters"]), indent=2))
        return 0

    if args.check:
        try:
            compile_strategy(merged_config["strategy"]["source"], resolve_param_names(merged_config))
        except CompileError as exc:
            print(str(exc), file=sys.stderr)
            return 1
        print("Strategy compiled successfully.")
        return 0

    count = grid_size(merged_config["parameters"])
    if not args.yes and not _confirm_large_grid(count, merged_config["simulation"]["confirm_grid_size"]):
        print("Aborted.", file=sys.stderr)
        return 1

    try:
        result = run_kelly_sweep(config=merged_config, verbose=not args.json)
    except (CompileError, StrategyExecutionError, WorkerTransportError) as exc:
        print(str(exc), file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps({key: value for key, value in result.items() if key != "top_results"}, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
