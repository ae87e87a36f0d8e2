"""
The Blue evaluator: an async tree-walking interpreter over `blue_ast` nodes.
"""
import asyncio
import collections
import dataclasses
import inspect
import os
import sys
from contextvars import ContextVar
from typing import Any, Dict, Iterable, List, Optional, Set

from blue import blue_ast as ast
from blue.blue_datatypes import (
    BREAK, CONTINUE, FALSE, NULL, TRUE,
    ArityError, BigFloat, BigInteger, BlueArithmeticError, BlueError, BlueImportError, BlueNameError,
    BlueObject, BlueParseError, BlueTypeError, Builtin, HostError, BuiltinObj, Bytes, Env, ErrorValue,
    Float, Function, Integer, ListValue, MapValue, Module, Null, RangeError, Regex, ReturnValue, SetValue,
    String, StructValue, UInteger, is_truthy, native_bool, unwrap_return, values_equal,
)
from blue.blue_host import LoaderError
from blue.blue_operators import apply_compound, eval_infix, eval_prefix, make_integer
from blue.blue_parser import ParseErrors, loop_targets, parse, parse_fragment
from blue.blue_printer import Printer
from blue.blue_process import PROCESS_TABLE, Process, Subscriber, current_process
from blue.blue_token import Token


class ErrorTrace:
    """The most recently entered statement and call tokens, newest last."""

    def __init__(self, capacity: int = 16):
        self._tokens = collections.deque(maxlen=capacity)

    def push(self, token: Optional[Token]):
        if token is not None:
            self._tokens.append(token)

    def top(self, n: int = 5) -> List[Token]:
        return list(reversed(self._tokens))[:n]

    def clear(self):
        self._tokens.clear()

    def __len__(self) -> int:
        return len(self._tokens)


# Per-task state: each spawned process gets its own copy.
_error_trace: ContextVar[Optional[ErrorTrace]] = ContextVar("blue_error_trace", default=None)
_call_depth: ContextVar[int] = ContextVar("blue_call_depth", default=0)

_INTEGER_TYPES = (Integer, UInteger, BigInteger)


class Evaluator:
    """Evaluates Blue programs; one instance per ScriptRunner."""

    def __init__(self, builtins, loader, scheduler, clock, node_name: str = "local"):
        self.builtins = builtins
        self.loader = loader
        self.scheduler = scheduler
        self.clock = clock
        self.node_name = node_name
        self.core_env = Env()
        self.printer = Printer()
        self.side_effects: List[Dict[str, Any]] = []
        self.module_cache: Dict[str, Module] = {}
        self.sources: Dict[str, str] = {}
        self.active_tasks: Set = set()
        self._importing: Set[str] = set()

    def _dbg(self, *parts):
        if os.environ.get("BLUE_DEBUG"):
            print("[DBG]", *parts, file=sys.stderr)

    def trace(self) -> ErrorTrace:
        trace = _error_trace.get()
        if trace is None:
            trace = ErrorTrace()
            _error_trace.set(trace)
        return trace

    def emit(self, topic: str, message: str):
        self.side_effects.append({"topics": [topic], "message": message})

    async def run(self, program: ast.Program, env: Env) -> BlueObject:
        """Evaluates a whole script with a fresh error trace."""
        _error_trace.set(ErrorTrace())
        return await self.eval(program, env)

    async def eval(self, node: ast.Node, env: Env) -> BlueObject:
        """Public entry point for evaluation. Unwraps return values."""
        result = await self._eval(node, env)
        return unwrap_return(result)

    async def _eval(self, node: ast.Node, env: Env) -> BlueObject:
        try:
            match node:
                # --- statements ---
                case ast.Program():
                    return await self._eval_program(node, env)
                case ast.ExpressionStmt():
                    return await self._eval(node.expression, env)
                case ast.BlockStmt():
                    return await self._eval_block(node, self._block_env(node, env))
                case ast.VarStmt():
                    await self._eval_var(node, env)
                    return NULL
                case ast.ValStmt():
                    name = node.name.value
                    value = await self._eval(node.value, env)
                    self._check_mutable(name, env)
                    env.define(name, value)
                    env.mark_immutable(name)
                    return NULL
                case ast.FunctionStmt():
                    name = node.name.value
                    self._check_mutable(name, env)
                    env.define(name, Function(node.params, node.defaults, node.body, env, name))
                    return NULL
                case ast.ReturnStmt():
                    if _call_depth.get() == 0:
                        raise BlueTypeError("return outside function")
                    value = NULL if node.value is None else await self._eval(node.value, env)
                    return ReturnValue(value)
                case ast.BreakStmt():
                    return BREAK
                case ast.ContinueStmt():
                    return CONTINUE
                case ast.ImportStmt():
                    env.define(node.binding, await self.import_module(node.path))
                    return NULL
                case ast.TryCatchStmt():
                    return await self._eval_try(node, env)

                # --- literals ---
                case ast.Identifier(value=name):
                    return self._lookup(name, env)
                case ast.NullLit():
                    return NULL
                case ast.BooleanLit(value=value):
                    return native_bool(value)
                case ast.IntegerLit(value=value):
                    return Integer(value)
                case ast.BigIntegerLit(value=value):
                    return BigInteger(value)
                case ast.FloatLit(value=value):
                    return Float(value)
                case ast.BigFloatLit(value=value):
                    return BigFloat(value)
                case ast.HexLit(value=value) | ast.OctalLit(value=value) | \
                        ast.BinaryLit(value=value) | ast.UIntegerLit(value=value):
                    return UInteger(value)
                case ast.StringLit():
                    if not node.parts:
                        return String(node.value)
                    return await self._eval_interpolated(node, env)
                case ast.ExecStringLit(value=command):
                    return await self.call_function(self._lookup("exec", env), [String(command)])
                case ast.RegexLit(pattern=pattern):
                    return Regex(pattern)
                case ast.ListLit(elements=elements):
                    return ListValue([await self._eval(e, env) for e in elements])
                case ast.MapLit():
                    return await self._eval_map(node, env)
                case ast.SetLit(elements=elements):
                    result = SetValue()
                    for e in elements:
                        result.add(await self._eval(e, env))
                    return result
                case ast.StructLit():
                    return StructValue({n: await self._eval(v, env) for n, v in zip(node.names, node.values)})
                case ast.ListComp() | ast.MapComp() | ast.SetComp():
                    return await self._eval_comprehension(node, env)
                case ast.FunctionLit():
                    return Function(node.params, node.defaults, node.body, env)

                # --- expressions ---
                case ast.PrefixExpr(operator=op, right=right):
                    return eval_prefix(op, await self._eval(right, env))
                case ast.InfixExpr():
                    return await self._eval_infix(node, env)
                case ast.IfExpr():
                    if is_truthy(await self._eval(node.condition, env)):
                        return await self._eval_block(node.consequence, self._block_env(node.consequence, env))
                    if node.alternative is not None:
                        return await self._eval_block(node.alternative, self._block_env(node.alternative, env))
                    return NULL
                case ast.MatchExpr():
                    return await self._eval_match(node, env)
                case ast.ForExpr():
                    return await self._eval_for(node, env)
                case ast.CallExpr():
                    return await self._eval_call(node, env)
                case ast.IndexExpr():
                    return await self._eval_index(node, env)
                case ast.AssignmentExpr():
                    return await self._eval_assignment(node, env)
                case ast.EvalExpr():
                    return await self._eval_eval(node, env)
                case ast.SpawnExpr():
                    values = [await self._eval(a, env) for a in node.arguments]
                    if not values:
                        raise ArityError("`spawn` wrong number of args. got=0, want=1")
                    return self.spawn(values[0], values[1:])
                case ast.SelfExpr():
                    proc = current_process.get()
                    if proc is None:
                        raise BlueTypeError("self() used outside of a process")
                    return proc
                case _:
                    raise BlueTypeError(f"cannot evaluate node {type(node).__name__}")
        except BlueError as e:
            self._locate(e, node)
            raise
        except (OverflowError, ValueError) as e:
            raise self._locate(BlueArithmeticError(str(e)), node) from e
        except MemoryError as e:
            raise self._locate(HostError("out of memory"), node) from e

    def _locate(self, error: BlueError, node: ast.Node) -> BlueError:
        if error.token is None:
            error.token = node.token
        if error.trace is None:
            error.trace = self.trace().top()
        return error

    # -- statements ------------------------------------------------------------

    async def _eval_program(self, program: ast.Program, env: Env) -> BlueObject:
        result = await self._eval_statements(program.statements, env)
        if result is BREAK or result is CONTINUE:
            raise BlueTypeError(f"{result.type_tag.value.lower()} outside loop")
        return result

    async def _eval_statements(self, statements, env: Env) -> BlueObject:
        result = NULL
        trace = self.trace()
        for stmt in statements:
            trace.push(stmt.token)
            result = await self._eval(stmt, env)
            if isinstance(result, ReturnValue) or result is BREAK or result is CONTINUE:
                return result
        return result

    async def _eval_block(self, block: ast.BlockStmt, env: Env) -> BlueObject:
        return await self._eval_statements(block.statements, env)

    def _block_env(self, block: ast.BlockStmt, env: Env) -> Env:
        return Env(env) if block.declares else env

    def _check_mutable(self, name: str, env: Env):
        if env.is_immutable(name):
            raise BlueNameError(f"'{name}' is immutable and cannot be reassigned")

    async def _eval_var(self, node: ast.VarStmt, env: Env):
        name = node.name.value
        value = await self._eval(node.value, env)
        self._check_mutable(name, env)
        if node.operator != "=":
            current = env.get(name)
            if current is None:
                raise BlueNameError(f"identifier not found: {name}")
            value = apply_compound(node.operator, current, value)
        env.define(name, value)

    async def _eval_try(self, node: ast.TryCatchStmt, env: Env) -> BlueObject:
        try:
            return await self._eval_block(node.body, self._block_env(node.body, env))
        except BlueError as e:
            if node.catch_body is None:
                raise
            self._dbg("catch", e.kind, e.message)
            scope = Env(env)
            if node.catch_name:
                scope.define(node.catch_name, e.value)
            return await self._eval_block(node.catch_body, scope)
        finally:
            if node.finally_body is not None:
                await self._eval_block(node.finally_body, self._block_env(node.finally_body, env))

    async def import_module(self, path: str) -> Module:
        cached = self.module_cache.get(path)
        if cached is not None:
            return cached
        if path in self._importing:
            raise BlueImportError(f"cyclic import of module '{path}'")
        try:
            source = self.loader.load(path)
        except LoaderError as e:
            raise BlueImportError(str(e)) from e
        self.sources[path] = source
        try:
            program = parse(source, path)
        except ParseErrors as e:
            raise BlueImportError(f"module '{path}' failed to parse:\n{e}") from e

        self._dbg("import", path)
        module_env = Env(self.core_env)
        self._importing.add(path)
        depth = _call_depth.set(0)
        try:
            await self._eval(program, module_env)
        finally:
            _call_depth.reset(depth)
            self._importing.discard(path)
        module = Module(path, module_env)
        self.module_cache[path] = module
        return module

    # -- expressions -------------------------------------------------------------

    def _lookup(self, name: str, env: Env) -> BlueObject:
        value = env.get(name)
        if value is None:
            value = self.builtins.get(name)
        if value is None:
            raise BlueNameError(f"identifier not found: {name}")
        return value

    async def _eval_interpolated(self, node: ast.StringLit, env: Env) -> String:
        out = []
        for part in node.parts:
            if isinstance(part, str):
                out.append(part)
            else:
                out.append(self.printer.pformat(await self._eval(part, env)))
        return String("".join(out))

    async def _eval_map(self, node: ast.MapLit, env: Env) -> MapValue:
        result = MapValue()
        for key_node, value_node in zip(node.keys, node.values):
            # A bare identifier that is not bound names a string key.
            if isinstance(key_node, ast.Identifier) and env.get(key_node.value) is None:
                key = String(key_node.value)
            else:
                key = await self._eval(key_node, env)
            result.set(key, await self._eval(value_node, env))
        return result

    async def _eval_infix(self, node: ast.InfixExpr, env: Env) -> BlueObject:
        op = node.operator
        left = await self._eval(node.left, env)
        if op == "and":
            if not is_truthy(left):
                return FALSE
            return native_bool(is_truthy(await self._eval(node.right, env)))
        if op == "or":
            if is_truthy(left):
                return TRUE
            right = await self._eval(node.right, env)
            return right if isinstance(left, Null) else native_bool(is_truthy(right))
        right = await self._eval(node.right, env)
        return eval_infix(op, left, right)

    async def _eval_match(self, node: ast.MatchExpr, env: Env) -> BlueObject:
        subject = await self._eval(node.subject, env) if node.subject is not None else None
        for condition, block in zip(node.conditions, node.consequences):
            if isinstance(condition, ast.Identifier) and condition.value == "_":
                matched = True
            else:
                value = await self._eval(condition, env)
                matched = values_equal(subject, value) if subject is not None else is_truthy(value)
            if matched:
                return await self._eval_block(block, self._block_env(block, env))
        return NULL

    async def _eval_for(self, node: ast.ForExpr, env: Env) -> BlueObject:
        if node.iterable is not None:
            iterable = await self._eval(node.iterable, env)
            for count, item in enumerate(self.iteration_items(iterable, node.destructure), 1):
                await self._maybe_yield(count)
                scope = Env(env)
                self._bind_targets(scope, node.targets, node.destructure, item)
                result = await self._eval_block(node.body, scope)
                if isinstance(result, ReturnValue):
                    return result
                if result is BREAK:
                    break
            return NULL

        loop_env = env
        if node.init is not None:
            loop_env = Env(env)
            await self._eval(node.init, loop_env)
        count = 0
        while True:
            if node.condition is not None and not is_truthy(await self._eval(node.condition, loop_env)):
                break
            result = await self._eval_block(node.body, self._block_env(node.body, loop_env))
            if isinstance(result, ReturnValue):
                return result
            if result is BREAK:
                break
            if node.post is not None:
                await self._eval(node.post, loop_env)
            count += 1
            await self._maybe_yield(count)
        return NULL

    async def _maybe_yield(self, count: int):
        # Loops inside spawned processes yield periodically so other processes run.
        proc = current_process.get()
        every = 10 if proc is not None and proc.task is not None else 100
        if count % every == 0:
            await asyncio.sleep(0)

    def iteration_items(self, value: BlueObject, pairs: bool) -> Iterable:
        """The items a `for ... in` loop visits; (key, item) tuples when `pairs`."""
        match value:
            case ListValue():
                items = list(value.elements)
                keys = [Integer(i) for i in range(len(items))]
            case SetValue():
                items = value.values()
                keys = [Integer(i) for i in range(len(items))]
            case MapValue():
                entries = value.items()
                if pairs:
                    return entries
                return [k for k, _ in entries]
            case StructValue():
                if pairs:
                    return [(String(k), v) for k, v in value.fields.items()]
                return [String(k) for k in value.fields]
            case String():
                items = [String(ch) for ch in value.value]
                keys = [Integer(i) for i in range(len(items))]
            case Bytes():
                items = [Integer(b) for b in value.value]
                keys = [Integer(i) for i in range(len(items))]
            case Integer() | UInteger() | BigInteger():
                counter = (make_integer(i) for i in range(value.value))
                return ((n, n) for n in counter) if pairs else counter
            case _:
                raise BlueTypeError(f"cannot iterate over {value.type_tag.value}")
        return list(zip(keys, items)) if pairs else items

    def _bind_targets(self, scope: Env, names, destructure: bool, item):
        if not destructure:
            scope.define(names[0], item)
        elif len(names) == 1:
            scope.define(names[0], item[1])
        else:
            scope.define(names[0], item[0])
            scope.define(names[1], item[1])

    async def _eval_comprehension(self, node, env: Env) -> BlueObject:
        path = node.token.file_path
        try:
            header = parse_fragment(node.header_src, path)
            condition = parse_fragment(node.filter_src, path) if node.filter_src is not None else None
            if isinstance(node, ast.MapComp):
                key_expr = parse_fragment(node.key_src, path)
                value_expr = parse_fragment(node.value_src, path)
            else:
                key_expr = None
                value_expr = parse_fragment(node.element_src, path)
        except ParseErrors as e:
            raise BlueParseError(e.errors[0].message) from e
        targets = loop_targets(header)
        if targets is None:
            raise BlueTypeError("comprehension header must have the form 'x in xs'")
        names, destructure, iterable_expr = targets

        match node:
            case ast.ListComp():
                result = ListValue()
            case ast.SetComp():
                result = SetValue()
            case _:
                result = MapValue()
        iterable = await self._eval(iterable_expr, env)
        for item in self.iteration_items(iterable, destructure):
            scope = Env(env)
            self._bind_targets(scope, names, destructure, item)
            if condition is not None and not is_truthy(await self._eval(condition, scope)):
                continue
            value = await self._eval(value_expr, scope)
            match result:
                case ListValue():
                    result.elements.append(value)
                case SetValue():
                    result.add(value)
                case MapValue():
                    result.set(await self._eval(key_expr, scope), value)
        return result

    async def _eval_eval(self, node: ast.EvalExpr, env: Env) -> BlueObject:
        source = await self._eval(node.argument, env)
        if not isinstance(source, String):
            raise BlueTypeError(f"eval expects a STRING, got {source.type_tag.value}")
        try:
            program = parse(source.value, "<eval>")
        except ParseErrors as e:
            raise BlueParseError(e.errors[0].message) from e
        self.sources["<eval>"] = source.value
        return await self._eval_statements(program.statements, env)

    # -- calls ---------------------------------------------------------------------

    async def _eval_call(self, node: ast.CallExpr, env: Env) -> BlueObject:
        fn_node = node.function
        receiver_node = None
        args: List[BlueObject] = []
        if isinstance(fn_node, ast.IndexExpr) and fn_node.member and isinstance(fn_node.index, ast.StringLit):
            receiver = await self._eval(fn_node.left, env)
            callee, ufcs = self._resolve_member_call(receiver, fn_node.index.value, env)
            if ufcs:
                args.append(receiver)
                receiver_node = fn_node.left
        else:
            callee = await self._eval(fn_node, env)
            if node.arguments:
                receiver_node = node.arguments[0]

        if isinstance(callee, Builtin) and callee.mutates and isinstance(receiver_node, ast.Identifier):
            if env.is_immutable(receiver_node.value):
                raise BlueNameError(f"'{receiver_node.value}' is immutable and cannot be modified by {callee.name}")

        for arg in node.arguments:
            args.append(await self._eval(arg, env))
        named = {}
        for name, expr in node.named:
            named[name] = await self._eval(expr, env)
        self.trace().push(node.token)
        return await self.call_function(callee, args, named)

    def _resolve_member_call(self, receiver: BlueObject, name: str, env: Env):
        """Returns (callee, ufcs); with UFCS the receiver becomes the first argument."""
        match receiver:
            case MapValue():
                found = receiver.get(String(name))
                if found is not None:
                    return found, False
            case StructValue():
                if name in receiver.fields:
                    return receiver.fields[name], False
            case Module():
                return self._module_member(receiver, name), False
            case Process() | Subscriber():
                return self.member(receiver, name), False
        fn = env.get(name) or self.builtins.get(name)
        if fn is None:
            raise BlueNameError(f"identifier not found: {name}")
        return fn, True

    async def call_function(self, fn: BlueObject, args: List[BlueObject],
                            named: Optional[Dict[str, BlueObject]] = None) -> BlueObject:
        named = named or {}
        match fn:
            case Function():
                return await self._call_user_function(fn, args, named)
            case Builtin():
                if named and not fn.accepts_named:
                    raise ArityError(f"`{fn.name}` does not accept named arguments")
                self._dbg("builtin call", fn.name, "argc", len(args))
                try:
                    result = fn.fn(*args, **named)
                    if inspect.isawaitable(result):
                        result = await result
                except BlueError:
                    raise
                except Exception as e:
                    raise HostError(f"`{fn.name}` failed: {e}") from e
                return NULL if result is None else result
            case BuiltinObj(value=inner):
                return await self.call_function(inner, args, named)
            case _:
                raise BlueTypeError(f"not a function: {fn.type_tag.value}")

    async def _call_user_function(self, fn: Function, args: List[BlueObject],
                                  named: Dict[str, BlueObject]) -> BlueObject:
        label = fn.name or "<anonymous>"
        params = [p.value for p in fn.params]
        if len(args) > len(params):
            raise ArityError(f"`{label}` wrong number of args. got={len(args)}, want={len(params)}")
        for name in named:
            if name not in params:
                raise ArityError(f"`{label}` got an unexpected named argument '{name}'")
            if params.index(name) < len(args):
                raise ArityError(f"`{label}` got multiple values for argument '{name}'")

        call_env = Env(fn.env)
        for param, arg in zip(params, args):
            call_env.define(param, arg)
        for i in range(len(args), len(params)):
            param = params[i]
            if param in named:
                call_env.define(param, named[param])
            elif fn.defaults[i] is not None:
                call_env.define(param, await self._eval(fn.defaults[i], call_env))
            else:
                raise ArityError(f"`{label}` missing argument '{param}'")

        self._dbg("call", label, "argc", len(args))
        depth = _call_depth.set(_call_depth.get() + 1)
        try:
            result = await self._eval_block(fn.body, call_env)
        finally:
            _call_depth.reset(depth)
        if result is BREAK or result is CONTINUE:
            raise BlueTypeError(f"{result.type_tag.value.lower()} outside loop")
        return unwrap_return(result)

    # -- indexing ------------------------------------------------------------------

    async def _eval_index(self, node: ast.IndexExpr, env: Env) -> BlueObject:
        left = await self._eval(node.left, env)
        index_node = node.index
        if (isinstance(index_node, ast.InfixExpr) and index_node.operator in ("..", "..<")
                and isinstance(left, (ListValue, String, Bytes))):
            start = await self._eval(index_node.left, env)
            end = await self._eval(index_node.right, env)
            return self._slice(left, start, end, index_node.operator == "..")
        return self.index_value(left, await self._eval(index_node, env))

    def _int_index(self, index: BlueObject, length: int) -> int:
        if not isinstance(index, _INTEGER_TYPES):
            raise BlueTypeError(f"index must be an integer, got {index.type_tag.value}")
        i = index.value
        if i < 0:
            i += length
        if not 0 <= i < length:
            raise RangeError(f"index out of range: {index.value} (length {length})")
        return i

    def _slice(self, seq: BlueObject, start: BlueObject, end: BlueObject, inclusive: bool) -> BlueObject:
        if not isinstance(start, _INTEGER_TYPES) or not isinstance(end, _INTEGER_TYPES):
            raise BlueTypeError("slice bounds must be integers")
        data = seq.elements if isinstance(seq, ListValue) else seq.value
        n = len(data)
        s = start.value + n if start.value < 0 else start.value
        e = end.value + n if end.value < 0 else end.value
        stop = e + 1 if inclusive else e
        if not (0 <= s <= n and 0 <= stop <= n):
            raise RangeError(f"slice out of range: {start.value}..{end.value} (length {n})")
        part = data[s:max(s, stop)]
        match seq:
            case ListValue():
                return ListValue(list(part))
            case String():
                return String(part)
            case _:
                return Bytes(part)

    def index_value(self, container: BlueObject, index: BlueObject) -> BlueObject:
        match container:
            case ListValue():
                return container.elements[self._int_index(index, len(container.elements))]
            case String():
                return String(container.value[self._int_index(index, len(container.value))])
            case Bytes():
                return Integer(container.value[self._int_index(index, len(container.value))])
            case SetValue():
                values = container.values()
                return values[self._int_index(index, len(values))]
            case MapValue():
                found = container.get(index)
                return NULL if found is None else found
        if not isinstance(index, String):
            raise BlueTypeError(f"index operator not supported: {container.type_tag.value}[{index.type_tag.value}]")
        match container:
            case StructValue():
                if index.value not in container.fields:
                    raise BlueNameError(f"struct has no field '{index.value}'")
                return container.fields[index.value]
            case Module():
                return self._module_member(container, index.value)
            case Process() | Subscriber() | ErrorValue():
                return self.member(container, index.value)
        raise BlueTypeError(f"index operator not supported: {container.type_tag.value}")

    def _module_member(self, module: Module, name: str) -> BlueObject:
        if name.startswith("_"):
            raise BlueNameError(f"'{name}' is private to module '{module.name}'")
        value = module.env.store.get(name)
        if value is None:
            raise BlueNameError(f"'{name}' not found in module '{module.name}'")
        return value

    def member(self, obj: BlueObject, name: str) -> BlueObject:
        """Named members of processes, subscribers and errors."""
        match obj:
            case Process():
                match name:
                    case "id":
                        return Integer(obj.id)
                    case "name":
                        return String(obj.node_name)
                    case "send":
                        return Builtin("send", obj.send, help="Sends a value to this process's mailbox.")
                    case "recv":
                        return Builtin("recv", lambda timeout=NULL: obj.recv(self._timeout(timeout)),
                                       help="Waits for the next message in this process's mailbox.")
                raise BlueTypeError(f"process has no member '{name}'")
            case Subscriber():
                match name:
                    case "id":
                        return Integer(obj.id)
                    case "topics":
                        return ListValue([String(t) for t in sorted(obj.topics)])
                    case "recv" | "poll":
                        return Builtin(name, lambda timeout=NULL: obj.poll(self._timeout(timeout)),
                                       help="Waits for the next published message.")
                raise BlueTypeError(f"subscriber has no member '{name}'")
            case ErrorValue():
                match name:
                    case "message":
                        return String(obj.message)
                    case "kind":
                        return NULL if obj.kind is None else String(obj.kind)
                raise BlueTypeError(f"error has no member '{name}'")
        raise BlueTypeError(f"{obj.type_tag.value} has no member '{name}'")

    @staticmethod
    def _timeout(value: BlueObject) -> Optional[float]:
        if isinstance(value, Null):
            return None
        if isinstance(value, (Integer, UInteger, Float)):
            return float(value.value)
        raise BlueTypeError(f"timeout must be a number of milliseconds, got {value.type_tag.value}")

    # -- assignment ------------------------------------------------------------------

    async def _eval_assignment(self, node: ast.AssignmentExpr, env: Env) -> BlueObject:
        target = node.target
        if isinstance(target, ast.Identifier):
            name = target.value
            value = await self._eval(node.value, env)
            current = env.get(name)
            if current is None:
                raise BlueNameError(f"identifier not found: {name}")
            if node.operator != "=":
                value = apply_compound(node.operator, current, value)
            env.set(name, value)
            return value

        if isinstance(target.left, ast.Identifier):
            self._check_mutable(target.left.value, env)
        container = await self._eval(target.left, env)
        index = await self._eval(target.index, env)
        value = await self._eval(node.value, env)
        if node.operator != "=":
            value = apply_compound(node.operator, self.index_value(container, index), value)
        self.assign_index(container, index, value)
        return value

    def assign_index(self, container: BlueObject, index: BlueObject, value: BlueObject):
        match container:
            case ListValue():
                container.elements[self._int_index(index, len(container.elements))] = value
            case MapValue():
                container.set(index, value)
            case StructValue():
                if not isinstance(index, String) or index.value not in container.fields:
                    raise BlueNameError(f"struct has no field '{index.inspect()}'")
                container.fields[index.value] = value
            case String():
                raise BlueTypeError("strings are immutable; index assignment is not supported")
            case _:
                raise BlueTypeError(f"index assignment not supported on {container.type_tag.value}")

    # -- processes -------------------------------------------------------------------

    def spawn(self, fn: BlueObject, args: List[BlueObject]) -> Process:
        if not isinstance(fn, (Function, Builtin, BuiltinObj)):
            raise BlueTypeError(f"spawn expects a function, got {fn.type_tag.value}")
        proc = PROCESS_TABLE.new_process(self.node_name)
        if isinstance(fn, Function):
            fn = dataclasses.replace(fn, env=fn.env.clone())
        task = self.scheduler.spawn(self._run_process(proc, fn, args))
        proc.task = task
        self._register_task(task)
        self._dbg("spawn", proc.id, fn.name if isinstance(fn, (Function, Builtin)) else "")
        return proc

    async def _run_process(self, proc: Process, fn: BlueObject, args: List[BlueObject]):
        current_process.set(proc)
        _error_trace.set(ErrorTrace())
        _call_depth.set(0)
        try:
            await self.call_function(fn, args)
        except BlueError as e:
            message = f"process {proc.id} exited with error: {e}"
            self._dbg(message)
            self.emit("stderr", message)
        finally:
            proc.close()
            PROCESS_TABLE.remove(proc)

    def _register_task(self, task):
        self.active_tasks.add(task)
        # Remove as soon as the task completes
        task.add_done_callback(lambda t: self.active_tasks.discard(t))

    def cancel_tasks(self) -> int:
        count = len(self.active_tasks)
        for task in list(self.active_tasks):
            task.cancel()
        self.active_tasks.clear()
        return count
