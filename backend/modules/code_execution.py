"""
Tabletalk Backend - Code Execution Module
AST-whitelisted pandas execution for numeric-modeling requests the tool registry cannot serve
"""

import ast
import builtins
import contextlib
import io
import traceback
from typing import Any, Optional

import numpy as np
import pandas as pd

BANNED_CALLS = {"open", "eval", "exec", "compile", "__import__", "globals", "locals", "vars", "input"}
SAFE_BUILTINS = {
    name: getattr(builtins, name)
    for name in (
        "abs", "all", "any", "bool", "dict", "enumerate", "float", "int", "len", "list", "max", "min",
        "print", "range", "round", "set", "sorted", "str", "sum", "tuple", "zip", "isinstance",
    )
}


class CodeRejected(ValueError):
    """Generated code failed the static safety check."""


def strip_code_fences(code: str) -> str:
    code = code.strip()
    if code.startswith("```"):
        code_lines = code.splitlines()
        if code_lines:
            code_lines = code_lines[1:]
        if code_lines and code_lines[-1].strip().startswith("```"):
            code_lines = code_lines[:-1]
        code = "\n".join(code_lines).strip()
    return code


def check_code(tree: ast.AST) -> None:
    for node in ast.walk(tree):
        if isinstance(node, (ast.Import, ast.ImportFrom)):
            raise CodeRejected("Security: Imports are not allowed.")
        if isinstance(node, ast.Call):
            if isinstance(node.func, ast.Name) and node.func.id in BANNED_CALLS:
                raise CodeRejected(f"Security: Function '{node.func.id}' is banned.")
        if isinstance(node, ast.Attribute) and node.attr.startswith("__"):
            raise CodeRejected(f"Security: Access to '{node.attr}' is banned.")


def load_frame(csv_text: Optional[str], fallback: Optional[pd.DataFrame] = None) -> pd.DataFrame:
    """DataFrame for the sandbox: re-read the raw CSV so pandas infers dtypes, else the loaded rows."""
    if csv_text:
        try:
            return pd.read_csv(io.StringIO(csv_text), low_memory=False)
        except (pd.errors.EmptyDataError, pd.errors.ParserError) as e:
            print(f"Sandbox CSV load failed, using parsed rows: {e}")
    return fallback.copy() if fallback is not None else pd.DataFrame()


def secure_exec(code: str, df: pd.DataFrame) -> tuple[bool, Any]:
    """
    Execute generated Python code against `df` after AST whitelisting.
    Returns (ok, result) where result is the `result` variable, captured stdout, or the error text.
    """
    try:
        tree = ast.parse(code)
    except SyntaxError as e:
        return False, f"Syntax Error: {e}"

    try:
        check_code(tree)
    except CodeRejected as e:
        return False, str(e)

    local_scope = {"df": df.copy(), "pd": pd, "np": np, "result": None}

    capture = io.StringIO()
    try:
        with contextlib.redirect_stdout(capture):
            exec(compile(tree, "<analysis>", "exec"), {"__builtins__": SAFE_BUILTINS}, local_scope)
    except Exception as e:
        return False, f"Runtime Error: {e}\n{traceback.format_exc(limit=2)}"

    output = capture.getvalue().strip()
    if local_scope.get("result") is not None:
        return True, local_scope["result"]
    return True, output or "No output."


def format_result(result: Any, max_rows: int = 50) -> str:
    if isinstance(result, pd.DataFrame):
        return result.head(max_rows).to_string()
    if isinstance(result, pd.Series):
        return result.head(max_rows).to_string()
    return str(result)
