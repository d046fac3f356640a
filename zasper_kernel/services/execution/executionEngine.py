import ast
import logging
import sys
import typing as t

logger = logging.getLogger(__name__)


class ExecutionError(Exception):
    """Evaluating user code failed.

    Carries what the execute_reply needs: the error name, its message and the
    traceback lines shown to the user.
    """

    def __init__(self, ename: str, evalue: str, traceback: t.Optional[t.List[str]] = None):
        super().__init__(evalue)
        self.ename = ename
        self.evalue = evalue
        self.traceback = traceback if traceback is not None else [evalue]


class ExecutionEngine:
    """Runs source text for the kernel.

    Subclasses implement execute(), returning the value of the code or None
    when it produced no value, and raising ExecutionError on failure.
    """

    language = ""
    language_version: t.List[int] = []

    def execute(self, code: str) -> t.Any:
        msg = "Must be implemented in a subclass"
        raise NotImplementedError(msg)


class PythonEngine(ExecutionEngine):
    """Evaluate Python code in a namespace that persists across executions.

    All statements run in order; when the last one is an expression its value
    is the result, like an interactive prompt.
    """

    language = "python"
    language_version = list(sys.version_info[:3])

    def __init__(self, namespace: t.Optional[t.Dict[str, t.Any]] = None):
        self.namespace = namespace if namespace is not None else {"__name__": "__main__"}
        self._cell = 0

    def _compile(self, code: str) -> t.Tuple[t.Optional[t.Any], t.Optional[t.Any]]:
        self._cell += 1
        filename = "<cell-%i>" % self._cell
        tree = ast.parse(code, filename=filename, mode="exec")
        last_expr = None
        if tree.body and isinstance(tree.body[-1], ast.Expr):
            last_expr = ast.Expression(tree.body.pop().value)
        body = compile(tree, filename, "exec") if tree.body else None
        expr = compile(last_expr, filename, "eval") if last_expr is not None else None
        return body, expr

    def execute(self, code: str) -> t.Any:
        try:
            body, expr = self._compile(code)
            if body is not None:
                exec(body, self.namespace)
            if expr is not None:
                return eval(expr, self.namespace)
        except BaseException as e:
            # SystemExit and KeyboardInterrupt from user code end the cell, not the kernel
            ename = type(e).__name__
            evalue = str(e) or ename
            logger.debug("Execution failed: %s: %s", ename, evalue)
            raise ExecutionError(ename, evalue) from e
        return None
