import ast
import keyword
import math
import random

import numpy as np


class CompileError(ValueError):
    pass


STRATEGY_FUNCTION_NAME = "strategy"

# Names visible to strategy code besides its parameters. This keeps ambient
# I/O out of reach of ordinary scripts; it is not a security boundary.
_STRATEGY_BUILTINS = {
    "abs": abs,
    "all": all,
    "any": any,
    "bool": bool,
    "enumerate": enumerate,
    "float": float,
    "int": int,
    "isinstance": isinstance,
    "len": len,
    "max": max,
    "min": min,
    "pow": pow,
    "range": range,
    "round": round,
    "sorted": sorted,
    "sum": sum,
    "zip": zip,
    "ArithmeticError": ArithmeticError,
    "Exception": Exception,
    "ValueError": ValueError,
    "RuntimeError": RuntimeError,
    "ZeroDivisionError": ZeroDivisionError,
}

_MATH_EXPORTS = (
    "ceil",
    "copysign",
    "cos",
    "e",
    "exp",
    "floor",
    "inf",
    "isfinite",
    "log",
    "log10",
    "log1p",
    "nan",
    "pi",
    "sin",
    "sqrt",
    "tan",
    "tanh",
)


def validate_param_names(param_names):
    seen = set()
    for name in param_names:
        if not isinstance(name, str) or not name.isidentifier() or keyword.iskeyword(name):
            raise CompileError(f"Invalid parameter name: {name!r}")
        if name in seen:
            raise CompileError(f"Duplicate parameter name: {name!r}")
        seen.add(name)


def _parse_body(source):
    if not isinstance(source, str):
        raise CompileError("Strategy code must be a string.")
    try:
        body = ast.parse(source, filename="<strategy>", mode="exec").body
    except SyntaxError as exc:
        raise CompileError(f"Syntax error in strategy code: {exc.msg} (line {exc.lineno})") from exc
    except ValueError as exc:
        raise CompileError(f"Syntax error in strategy code: {exc}") from exc
    if not body:
        raise CompileError("Strategy code is empty.")

    # Implicit return: a trailing bare expression is the multiplier.
    last = body[-1]
    if isinstance(last, ast.Expr):
        body[-1] = ast.copy_location(ast.Return(value=last.value), last)
    return body


def _build_module(source, param_names):
    body = _parse_body(source)
    header = f"def {STRATEGY_FUNCTION_NAME}({', '.join(param_names)}):\n    pass\n"
    module = ast.parse(header, filename="<strategy>", mode="exec")
    module.body[0].body = body
    return ast.fix_missing_locations(module)


def _strategy_namespace(seed):
    namespace = {"__builtins__": dict(_STRATEGY_BUILTINS)}
    for name in _MATH_EXPORTS:
        namespace[name] = getattr(math, name)
    namespace["math"] = math
    namespace["np"] = np
    namespace["random"] = random.Random(seed)
    namespace["rng"] = np.random.default_rng(seed)
    return namespace


def compile_strategy(source, param_names, seed=None):
    """Compile strategy source text into a callable of the declared parameters.

    The source is a function body. Parameters are bound positionally in
    ``param_names`` order, and a trailing bare expression is returned as the
    multiplier. Every call to this function builds a fresh namespace with its
    own ``random`` (a ``random.Random``) and ``rng`` (a numpy ``Generator``),
    both seeded from ``seed`` (OS entropy when ``None``), so two compiled
    instances never share randomness state.

    Raises CompileError when the source or the parameter names are invalid.
    """
    param_names = list(param_names)
    validate_param_names(param_names)
    try:
        module = _build_module(source, param_names)
        code = compile(module, "<strategy>", "exec")
    except SyntaxError as exc:
        raise CompileError(f"Syntax error in strategy code: {exc.msg} (line {exc.lineno})") from exc
    except (RecursionError, MemoryError) as exc:
        raise CompileError(f"Strategy code is too deeply nested to compile ({type(exc).__name__}).") from exc

    namespace = _strategy_namespace(seed)
    exec(code, namespace)
    return namespace[STRATEGY_FUNCTION_NAME]


def check_strategy(source, param_names):
    try:
        compile_strategy(source, param_names)
    except CompileError as exc:
        return False, str(exc)
    return True, None
