#!/usr/bin/env python3

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from string import digits, ascii_letters, printable, whitespace
from typing import (
    Any,
    Callable,
    Optional,
    TextIO,
    Tuple,
    Union,
    final,
)
import enum
import math
import os
import re
import shlex
import subprocess
import sys
import threading


def quote(item: Any) -> str:
    text = str(item)
    return f"`{text}`" if "`" not in text else f'"{text}"'


class Value(ABC):
    @staticmethod
    @abstractmethod
    def typename() -> str:
        raise NotImplementedError()

    @abstractmethod
    def __str__(self):
        raise NotImplementedError()

    @abstractmethod
    def __bool__(self):
        raise NotImplementedError()


@final
@dataclass
class Nil(Value):
    @staticmethod
    def typename() -> str:
        return "nil"

    def __str__(self):
        return "0"

    def __bool__(self):
        return False


@final
@dataclass
class Number(Value):
    data: float

    def __post_init__(self):
        # KL numbers are IEEE-754 doubles, so integer payloads are cast in
        # order to keep formatting and equality consistent.
        self.data = float(self.data)

    @staticmethod
    def typename() -> str:
        return "number"

    def __int__(self) -> int:
        return int(self.data)

    def __float__(self) -> float:
        return self.data

    def __str__(self):
        if math.isnan(self.data):
            return "nan"
        if self.data == +math.inf:
            return "inf"
        if self.data == -math.inf:
            return "-inf"
        # The repr of a float is the shortest string that round-trips.
        string = repr(self.data)
        if string.endswith(".0"):
            return string[:-2]
        return string

    def __bool__(self):
        return self.data != 0


@final
@dataclass
class String(Value):
    data: str

    @staticmethod
    def typename() -> str:
        return "string"

    def __str__(self):
        return self.data

    def __bool__(self):
        return len(self.data) != 0


@dataclass
class SourceLocation:
    filename: Optional[str]
    line: int

    def __str__(self):
        if self.filename is None:
            return f"line {self.line}"
        return f"{self.filename}, line {self.line}"


class TokenKind(enum.Enum):
    # Meta
    ILLEGAL = "illegal"
    EOF = "eof"
    # Identifiers and Literals
    IDENTIFIER = "identifier"
    NUMBER = "number"
    STRING = "string"
    # Operators
    ADD = "+"
    SUB = "-"
    MUL = "*"
    DIV = "/"
    REM = "%"
    POW = "^"
    BITAND = "&"
    BITOR = "|"
    NOT = "!"
    INC = "++"
    DEC = "--"
    EQ = "=="
    NE = "!="
    LE = "<="
    GE = ">="
    LT = "<"
    GT = ">"
    ASSIGN = "="
    DOT = "."
    # Delimiters
    COMMA = ","
    SEMICOLON = ";"
    LPAREN = "("
    RPAREN = ")"
    LBRACE = "{"
    RBRACE = "}"
    # Keywords
    NUM = "num"
    STR = "str"
    VAR = "var"
    IF = "if"
    ELIF = "elif"
    ELSE = "else"
    WHILE = "while"
    PRINT = "print"
    FUN = "fun"
    RETURN = "return"
    IMPORT = "import"
    XOR = "xor"

    def __str__(self):
        return self.value


@dataclass
class Token:
    KEYWORDS = {
        # fmt: off
        str(TokenKind.NUM):    TokenKind.NUM,
        str(TokenKind.STR):    TokenKind.STR,
        str(TokenKind.VAR):    TokenKind.VAR,
        str(TokenKind.IF):     TokenKind.IF,
        str(TokenKind.ELIF):   TokenKind.ELIF,
        str(TokenKind.ELSE):   TokenKind.ELSE,
        str(TokenKind.WHILE):  TokenKind.WHILE,
        str(TokenKind.PRINT):  TokenKind.PRINT,
        str(TokenKind.FUN):    TokenKind.FUN,
        str(TokenKind.RETURN): TokenKind.RETURN,
        str(TokenKind.IMPORT): TokenKind.IMPORT,
        str(TokenKind.XOR):    TokenKind.XOR,
        # fmt: on
    }

    kind: TokenKind
    literal: str
    location: Optional[SourceLocation] = None
    number: Optional[float] = None
    string: Optional[str] = None

    def __str__(self):
        if self.kind == TokenKind.EOF:
            return "end-of-file"
        if self.kind == TokenKind.ILLEGAL:

            def prettyable(c):
                return c in printable and c not in whitespace

            def prettyrepr(c):
                return c if prettyable(c) else f"{ord(c):#04x}"

            return "".join(map(prettyrepr, self.literal))
        if self.kind == TokenKind.STRING:
            return f'"{self.literal}"'
        return f"{self.literal}"

    @staticmethod
    def lookup_identifier(identifier: str) -> TokenKind:
        return Token.KEYWORDS.get(identifier, TokenKind.IDENTIFIER)


@dataclass
class LexError(Exception):
    location: Optional[SourceLocation]
    why: str

    def __str__(self):
        if self.location is None:
            return f"{self.why}"
        return f"[{self.location}] {self.why}"


class Lexer:
    EOF_LITERAL = ""
    RE_IDENTIFIER = re.compile(r"^[a-zA-Z_]\w*", re.ASCII)
    RE_NUMBER_HEX = re.compile(r"^0x[0-9a-fA-F]+", re.ASCII)
    RE_NUMBER_DEC = re.compile(r"^(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?", re.ASCII)

    # Two-character operators are matched before their one-character
    # prefixes so that `==` is never lexed as `=` followed by `=`.
    OPERATORS = [
        TokenKind.EQ,
        TokenKind.NE,
        TokenKind.LE,
        TokenKind.GE,
        TokenKind.INC,
        TokenKind.DEC,
        TokenKind.ASSIGN,
        TokenKind.LT,
        TokenKind.GT,
        TokenKind.NOT,
        TokenKind.ADD,
        TokenKind.SUB,
        TokenKind.MUL,
        TokenKind.DIV,
        TokenKind.REM,
        TokenKind.POW,
        TokenKind.BITAND,
        TokenKind.BITOR,
        TokenKind.COMMA,
        TokenKind.SEMICOLON,
        TokenKind.DOT,
        TokenKind.LPAREN,
        TokenKind.RPAREN,
        TokenKind.LBRACE,
        TokenKind.RBRACE,
    ]

    def __init__(self, source: str, location: Optional[SourceLocation] = None):
        self.source: str = source
        # What position does the source "start" being lexed from.
        # None if the source is being lexed in a location-independent manner.
        self.location: Optional[SourceLocation] = location
        self.position: int = 0

    @staticmethod
    def _is_letter(ch: str) -> bool:
        return len(ch) == 1 and (ch in ascii_letters or ch == "_")

    @staticmethod
    def _is_digit(ch: str) -> bool:
        return len(ch) == 1 and ch in digits

    def _current_character(self) -> str:
        if self.position >= len(self.source):
            return Lexer.EOF_LITERAL
        return self.source[self.position]

    def _peek_character(self) -> str:
        if self.position + 1 >= len(self.source):
            return Lexer.EOF_LITERAL
        return self.source[self.position + 1]

    def _is_eof(self) -> bool:
        return self.position >= len(self.source)

    def _advance_character(self) -> None:
        if self._is_eof():
            return
        if self.location is not None:
            self.location.line += int(self.source[self.position] == "\n")
        self.position += 1

    def _skip_whitespace(self) -> None:
        while not self._is_eof() and self._current_character() in whitespace:
            self._advance_character()

    def _skip_comment(self) -> None:
        if self._current_character() != "#":
            return
        while not self._is_eof() and self._current_character() != "\n":
            self._advance_character()
        self._advance_character()

    def _skip_whitespace_and_comments(self) -> None:
        while not self._is_eof() and (
            self._current_character() in whitespace or self._current_character() == "#"
        ):
            self._skip_whitespace()
            self._skip_comment()

    def _new_token(self, kind: TokenKind, literal: str, **kwargs) -> Token:
        location = (
            SourceLocation(self.location.filename, self.location.line)
            if self.location is not None
            else None
        )
        return Token(kind, literal, location, **kwargs)

    def _lex_keyword_or_identifier(self) -> Token:
        assert Lexer._is_letter(self._current_character())
        match = Lexer.RE_IDENTIFIER.match(self.source[self.position :])
        assert match is not None  # guaranteed by regexp
        text = match[0]
        self.position += len(text)
        return self._new_token(Token.lookup_identifier(text), text)

    def _lex_number(self) -> Token:
        match = Lexer.RE_NUMBER_HEX.match(self.source[self.position :])
        if match is not None:
            text = match[0]
            self.position += len(text)
            return self._new_token(TokenKind.NUMBER, text, number=float(int(text, 16)))
        match = Lexer.RE_NUMBER_DEC.match(self.source[self.position :])
        assert match is not None  # guaranteed by regexp
        text = match[0]
        self.position += len(text)
        return self._new_token(TokenKind.NUMBER, text, number=float(text))

    def _lex_string(self) -> Token:
        token = self._new_token(TokenKind.STRING, "")
        assert self._current_character() == '"'
        self._advance_character()
        start = self.position
        while self._current_character() != '"':
            if self._is_eof():
                raise LexError(token.location, "unterminated string")
            self._advance_character()
        text = self.source[start : self.position]
        self._advance_character()
        token.literal = text
        token.string = text
        return token

    def next_token(self) -> Token:
        self._skip_whitespace_and_comments()

        if self._is_eof():
            return self._new_token(TokenKind.EOF, Lexer.EOF_LITERAL)

        current = self._current_character()
        if Lexer._is_letter(current):
            return self._lex_keyword_or_identifier()

        if Lexer._is_digit(current):
            return self._lex_number()

        if current == "." and Lexer._is_digit(self._peek_character()):
            return self._lex_number()

        if current == '"':
            return self._lex_string()

        for kind in Lexer.OPERATORS:
            if self.source.startswith(kind.value, self.position):
                token = self._new_token(kind, kind.value)
                self.position += len(kind.value)
                return token

        token = self._new_token(TokenKind.ILLEGAL, current)
        raise LexError(token.location, f"unexpected character {quote(token)}")


@dataclass
class ParseError(Exception):
    location: Optional[SourceLocation]
    why: str

    def __str__(self):
        if self.location is None:
            return f"{self.why}"
        return f"[{self.location}] {self.why}"


@dataclass
class Variable:
    name: str
    value: Value


class Environment:
    def __init__(self):
        self.store: dict[str, Variable] = dict()

    def __contains__(self, name: str) -> bool:
        return name in self.store

    def __iter__(self):
        return iter(self.store.values())

    def let(self, name: str, value: Value) -> None:
        self.store[name] = Variable(name, value)

    def get(self, name: str) -> Optional[Variable]:
        return self.store.get(name, None)


@dataclass
class Return:
    value: Value


@dataclass
class Error:
    @dataclass
    class TraceElement:
        location: Optional[SourceLocation]
        function: str

    location: Optional[SourceLocation]
    message: str
    trace: list[TraceElement] = field(default_factory=list)

    def __str__(self):
        return self.message


ControlFlow = Union[Return, Error]


class DeclaredKind(enum.Enum):
    NUM = "num"
    STR = "str"
    VAR = "var"

    def __str__(self):
        return self.value


def coerce(
    location: Optional[SourceLocation], kind: DeclaredKind, value: Value
) -> Union[Value, Error]:
    """
    Convert a value into the representation required by a declared kind.
    Numeric kinds reject strings, string kinds format anything, and inferred
    kinds keep whatever was produced. Nil becomes zero in every case.
    """
    match kind:
        case DeclaredKind.NUM:
            if isinstance(value, Nil):
                return Number(0)
            if not isinstance(value, Number):
                return Error(
                    location,
                    f"expected number, received {value.typename()} {quote(value)}",
                )
            return value
        case DeclaredKind.STR:
            return String(str(value))
        case DeclaredKind.VAR:
            return Number(0) if isinstance(value, Nil) else value


class DataKind(enum.Enum):
    INT = "int"
    DOUBLE = "double"
    STRING = "string"
    STRING_ARRAY = "string..."
    VOID = "void"

    def __str__(self):
        return self.value


@dataclass
class FunctionMeta:
    name: str
    params: list[DataKind]
    ret: DataKind
    invoker: Callable[..., Any]

    def __str__(self):
        params = ", ".join(map(str, self.params))
        return f"{self.name}({params}) -> {self.ret}"


@dataclass
class Module:
    name: str
    functions: dict[str, FunctionMeta]
    constants: dict[str, Value]

    def copy(self) -> "Module":
        return Module(self.name, dict(self.functions), dict(self.constants))


class Interpreter:
    """
    Execution context of a KL program. Owns the root environment, the user
    function table, the registry of modules available for import, and the
    subset of those modules the program has imported.
    """

    def __init__(self, stdout: Optional[TextIO] = None):
        self.root: Environment = Environment()
        self.functions: dict[str, "AstStatementFunction"] = dict()
        self.modules: dict[str, Module] = {
            name: module.copy() for name, module in BUILTIN_MODULES.items()
        }
        self.imported: dict[str, Module] = dict()
        # None writes to whatever sys.stdout is at the time of the print.
        self.stdout: Optional[TextIO] = stdout

    def scope(self) -> "Scope":
        return Scope(self, self.root)

    def constant(self, name: str) -> Optional[Value]:
        for module in self.imported.values():
            if name in module.constants:
                return module.constants[name]
        return None

    def builtin(self, name: str) -> Optional[FunctionMeta]:
        for module in self.imported.values():
            if name in module.functions:
                return module.functions[name]
        return None

    def dump(self, file: Optional[TextIO] = None) -> None:
        print("variables:", file=file)
        for variable in self.root:
            value = variable.value
            text = f'"{value}"' if isinstance(value, String) else f"{value}"
            print(f"    {variable.name} = {text}", file=file)
        print("functions:", file=file)
        for function in self.functions.values():
            print(f"    {function.signature()}", file=file)


class Scope:
    """
    Name resolution context for a single evaluation. Lookups search the
    innermost environment followed by the root environment and nothing in
    between, so a nested body never sees the locals of the body enclosing it.
    """

    def __init__(self, interpreter: Interpreter, innermost: Environment):
        self.interpreter: Interpreter = interpreter
        self.innermost: Environment = innermost

    def nested(self) -> "Scope":
        return Scope(self.interpreter, Environment())

    def lookup(self, name: str) -> Optional[Variable]:
        variable = self.innermost.get(name)
        if variable is None and self.innermost is not self.interpreter.root:
            variable = self.interpreter.root.get(name)
        return variable


class AstNode(ABC):
    location: Optional[SourceLocation]


class AstExpression(AstNode):
    @abstractmethod
    def eval(self, scope: Scope) -> Union[Value, Error]:
        raise NotImplementedError()


class AstStatement(AstNode):
    @abstractmethod
    def eval(self, scope: Scope) -> Optional[ControlFlow]:
        raise NotImplementedError()


@final
@dataclass
class AstExpressionNumber(AstExpression):
    location: Optional[SourceLocation]
    data: Number

    def eval(self, scope: Scope) -> Union[Value, Error]:
        return self.data


@final
@dataclass
class AstExpressionString(AstExpression):
    location: Optional[SourceLocation]
    data: String

    def eval(self, scope: Scope) -> Union[Value, Error]:
        return self.data


@final
@dataclass
class AstExpressionVariable(AstExpression):
    location: Optional[SourceLocation]
    module: Optional[str]
    name: str

    def __str__(self):
        if self.module is None:
            return self.name
        return f"{self.module}.{self.name}"

    def eval(self, scope: Scope) -> Union[Value, Error]:
        if self.module is not None:
            module = scope.interpreter.imported.get(self.module)
            if module is None:
                return Error(self.location, f"module {quote(self.module)} not imported")
            if self.name not in module.constants:
                return Error(self.location, f"undefined constant {quote(self)}")
            return module.constants[self.name]
        variable = scope.lookup(self.name)
        if variable is not None:
            return variable.value
        constant = scope.interpreter.constant(self.name)
        if constant is not None:
            return constant
        # Unknown names read as zero.
        return Number(0)


class UnaryOperator(enum.Enum):
    NEG = "-"
    NOT = "!"

    def __str__(self):
        return self.value


@final
@dataclass
class AstExpressionUnary(AstExpression):
    location: Optional[SourceLocation]
    op: UnaryOperator
    expression: AstExpression

    def eval(self, scope: Scope) -> Union[Value, Error]:
        result = self.expression.eval(scope)
        if isinstance(result, Error):
            return result
        match self.op:
            case UnaryOperator.NOT:
                return Number(not result)
            case UnaryOperator.NEG:
                if isinstance(result, String):
                    return Error(
                        self.location,
                        f"attempted unary {self.op} operation with type {quote(result.typename())}",
                    )
                return Number(-float(result) if isinstance(result, Number) else 0.0)


class BinaryOperator(enum.Enum):
    ADD = "+"
    SUB = "-"
    MUL = "*"
    DIV = "/"
    REM = "%"
    POW = "^"
    BITAND = "&"
    BITOR = "|"
    XOR = "xor"
    LT = "<"
    GT = ">"
    EQ = "=="
    NE = "!="
    LE = "<="
    GE = ">="

    def __str__(self):
        return self.value


def int64(value: float) -> int:
    # Wrap into the signed 64-bit range.
    integer = int(value) & 0xFFFFFFFFFFFFFFFF
    return integer - (1 << 64) if integer >= (1 << 63) else integer


def power(x: float, y: float) -> float:
    if x == 0 and y < 0:
        return math.inf
    try:
        return math.pow(x, y)
    except ValueError:
        return math.nan
    except OverflowError:
        negative = x < 0 and math.fmod(y, 2) == 1
        return -math.inf if negative else math.inf


def binary(
    location: Optional[SourceLocation],
    op: BinaryOperator,
    lhs: Value,
    rhs: Value,
) -> Union[Value, Error]:
    if isinstance(lhs, String) and isinstance(rhs, String):
        match op:
            case BinaryOperator.ADD:
                return String(lhs.data + rhs.data)
            case BinaryOperator.EQ:
                return Number(lhs.data == rhs.data)
            case BinaryOperator.NE:
                return Number(lhs.data != rhs.data)
    if isinstance(lhs, String) or isinstance(rhs, String):
        return Error(
            location,
            f"type-incompatible operation {quote(lhs.typename())} {op} {quote(rhs.typename())}",
        )

    x = 0.0 if isinstance(lhs, Nil) else float(lhs)  # type: ignore
    y = 0.0 if isinstance(rhs, Nil) else float(rhs)  # type: ignore
    match op:
        case BinaryOperator.ADD:
            return Number(x + y)
        case BinaryOperator.SUB:
            return Number(x - y)
        case BinaryOperator.MUL:
            return Number(x * y)
        case BinaryOperator.DIV:
            if y == 0:
                return Error(location, "division by zero")
            return Number(x / y)
        case BinaryOperator.REM:
            if y == 0:
                return Error(location, "modulo by zero")
            # Fractional operands are kept: 7.5 % 2 is 1.5.
            try:
                return Number(math.fmod(x, y))
            except ValueError:
                return Number(math.nan)
        case BinaryOperator.POW:
            if x == 0 and y == 0:
                return Error(location, "zero raised to the power of zero")
            return Number(power(x, y))
        case BinaryOperator.BITAND | BinaryOperator.BITOR | BinaryOperator.XOR:
            if not (math.isfinite(x) and math.isfinite(y)):
                return Error(location, f"bitwise {op} operation with non-finite operand")
            if op == BinaryOperator.BITAND:
                return Number(int64(x) & int64(y))
            if op == BinaryOperator.BITOR:
                return Number(int64(x) | int64(y))
            return Number(int64(x) ^ int64(y))
        case BinaryOperator.LT:
            return Number(x < y)
        case BinaryOperator.GT:
            return Number(x > y)
        case BinaryOperator.EQ:
            return Number(x == y)
        case BinaryOperator.NE:
            return Number(x != y)
        case BinaryOperator.LE:
            return Number(x <= y)
        case BinaryOperator.GE:
            return Number(x >= y)
    raise AssertionError(f"unhandled binary operator {op}")


@final
@dataclass
class AstExpressionBinary(AstExpression):
    location: Optional[SourceLocation]
    op: BinaryOperator
    lhs: AstExpression
    rhs: AstExpression

    def eval(self, scope: Scope) -> Union[Value, Error]:
        lhs = self.lhs.eval(scope)
        if isinstance(lhs, Error):
            return lhs
        rhs = self.rhs.eval(scope)
        if isinstance(rhs, Error):
            return rhs
        return binary(self.location, self.op, lhs, rhs)


@final
@dataclass
class AstExpressionPostfix(AstExpression):
    location: Optional[SourceLocation]
    op: TokenKind
    name: str

    def eval(self, scope: Scope) -> Union[Value, Error]:
        variable = scope.lookup(self.name)
        if variable is None:
            if scope.interpreter.constant(self.name) is not None:
                return Error(
                    self.location,
                    f"attempted to modify read-only constant {quote(self.name)}",
                )
            return Error(self.location, f"undefined variable {quote(self.name)}")
        old = variable.value
        if not isinstance(old, Number):
            return Error(
                self.location,
                f"postfix operator can only be applied to numeric variables, {quote(self.name)} is a {old.typename()}",
            )
        delta = 1 if self.op == TokenKind.INC else -1
        variable.value = Number(old.data + delta)
        return old


@final
@dataclass
class AstExpressionFunctionCall(AstExpression):
    location: Optional[SourceLocation]
    module: Optional[str]
    name: str
    arguments: list[AstExpression]

    def _qualified(self) -> str:
        if self.module is None:
            return self.name
        return f"{self.module}.{self.name}"

    def eval(self, scope: Scope) -> Union[Value, Error]:
        interpreter = scope.interpreter
        if self.module is None:
            function = interpreter.functions.get(self.name)
            if function is not None:
                return call(scope, self.location, function, self.arguments)
            meta = interpreter.builtin(self.name)
        else:
            module = interpreter.imported.get(self.module)
            if module is None:
                return Error(self.location, f"module {quote(self.module)} not imported")
            meta = module.functions.get(self.name)
        if meta is None:
            return Error(self.location, f"undefined function {quote(self._qualified())}")

        arguments: list[Value] = list()
        for argument in self.arguments:
            result = argument.eval(scope)
            if isinstance(result, Error):
                return result
            arguments.append(result)
        return call_builtin(self.location, meta, arguments)


@final
@dataclass
class AstBlock(AstNode):
    location: Optional[SourceLocation]
    statements: list[AstStatement]

    def eval(self, scope: Scope) -> Optional[ControlFlow]:
        # The caller decides which environment the block executes in.
        for statement in self.statements:
            result = statement.eval(scope)
            if result is not None:
                return result
        return None


@final
@dataclass
class AstConditional(AstNode):
    location: Optional[SourceLocation]
    condition: AstExpression
    body: AstBlock

    def exec(self, scope: Scope) -> Tuple[Optional[ControlFlow], bool]:
        result = self.condition.eval(scope)
        if isinstance(result, Error):
            return (result, False)
        if result:
            return (self.body.eval(scope.nested()), True)
        return (None, False)


@final
@dataclass
class AstStatementDeclaration(AstStatement):
    location: Optional[SourceLocation]
    kind: DeclaredKind
    name: str
    expression: AstExpression

    def eval(self, scope: Scope) -> Optional[ControlFlow]:
        result = self.expression.eval(scope)
        if isinstance(result, Error):
            return result
        value = coerce(self.location, self.kind, result)
        if isinstance(value, Error):
            return value
        scope.innermost.let(self.name, value)
        return None


@final
@dataclass
class AstStatementAssignment(AstStatement):
    location: Optional[SourceLocation]
    target: AstExpressionVariable
    expression: AstExpression

    def eval(self, scope: Scope) -> Optional[ControlFlow]:
        result = self.expression.eval(scope)
        if isinstance(result, Error):
            return result
        if self.target.module is not None:
            return Error(
                self.location,
                f"attempted to modify read-only constant {quote(self.target)}",
            )
        variable = scope.lookup(self.target.name)
        if variable is None:
            if scope.interpreter.constant(self.target.name) is not None:
                return Error(
                    self.location,
                    f"attempted to modify read-only constant {quote(self.target)}",
                )
            return Error(self.location, f"undefined variable {quote(self.target)}")
        variable.value = result
        return None


@final
@dataclass
class AstStatementPrint(AstStatement):
    location: Optional[SourceLocation]
    expressions: list[AstExpression]

    def eval(self, scope: Scope) -> Optional[ControlFlow]:
        output: list[str] = list()
        for expression in self.expressions:
            result = expression.eval(scope)
            if isinstance(result, Error):
                return result
            output.append(str(result))
        print("".join(output), file=scope.interpreter.stdout)
        return None


@final
@dataclass
class AstStatementIfElifElse(AstStatement):
    location: Optional[SourceLocation]
    conditionals: list[AstConditional]
    else_block: Optional[AstBlock]

    def eval(self, scope: Scope) -> Optional[ControlFlow]:
        for conditional in self.conditionals:
            (result, executed) = conditional.exec(scope)
            if result is not None:
                return result
            if executed:
                return result
        if self.else_block is not None:
            return self.else_block.eval(scope.nested())
        return None


@final
@dataclass
class AstStatementWhile(AstStatement):
    location: Optional[SourceLocation]
    condition: AstExpression
    body: AstBlock

    def eval(self, scope: Scope) -> Optional[ControlFlow]:
        while True:
            condition = self.condition.eval(scope)
            if isinstance(condition, Error):
                return condition
            if not condition:
                break
            result = self.body.eval(scope.nested())
            if result is not None:
                return result
        return None


@final
@dataclass
class AstParameter(AstNode):
    location: Optional[SourceLocation]
    kind: DeclaredKind
    name: str

    def __str__(self):
        return f"{self.kind} {self.name}"


@final
@dataclass
class AstStatementFunction(AstStatement):
    location: Optional[SourceLocation]
    kind: DeclaredKind
    name: str
    parameters: list[AstParameter]
    body: AstBlock

    def signature(self) -> str:
        parameters = ", ".join(map(str, self.parameters))
        return f"{self.name}({parameters}) -> {self.kind}"

    def eval(self, scope: Scope) -> Optional[ControlFlow]:
        scope.interpreter.functions[self.name] = self
        return None


@final
@dataclass
class AstStatementReturn(AstStatement):
    location: Optional[SourceLocation]
    expression: Optional[AstExpression]

    def eval(self, scope: Scope) -> Optional[ControlFlow]:
        if self.expression is None:
            return Return(Nil())
        result = self.expression.eval(scope)
        if isinstance(result, Error):
            return result
        return Return(result)


@final
@dataclass
class AstStatementImport(AstStatement):
    location: Optional[SourceLocation]
    name: str

    def eval(self, scope: Scope) -> Optional[ControlFlow]:
        module = scope.interpreter.modules.get(self.name)
        if module is None:
            return Error(self.location, f"module {quote(self.name)} not found")
        scope.interpreter.imported[self.name] = module
        return None


@final
@dataclass
class AstStatementExpression(AstStatement):
    location: Optional[SourceLocation]
    expression: AstExpression

    def eval(self, scope: Scope) -> Optional[ControlFlow]:
        result = self.expression.eval(scope)
        if isinstance(result, Error):
            return result
        return None


class Precedence(enum.IntEnum):
    # fmt: off
    LOWEST  = enum.auto()
    COMPARE = enum.auto()  # == != <= >= < >
    BIT_OR  = enum.auto()  # |
    XOR     = enum.auto()  # xor
    BIT_AND = enum.auto()  # &
    ADD_SUB = enum.auto()  # + -
    MUL_DIV = enum.auto()  # * / %
    POWER   = enum.auto()  # ^
    PREFIX  = enum.auto()  # -x !x
    POSTFIX = enum.auto()  # foo(bar, 123) foo.bar x++ x--
    # fmt: on


class Parser:
    ParseNud = Callable[["Parser"], AstExpression]
    ParseLed = Callable[["Parser", AstExpression], AstExpression]

    PRECEDENCES: dict[TokenKind, Precedence] = {
        # fmt: off
        TokenKind.EQ:     Precedence.COMPARE,
        TokenKind.NE:     Precedence.COMPARE,
        TokenKind.LE:     Precedence.COMPARE,
        TokenKind.GE:     Precedence.COMPARE,
        TokenKind.LT:     Precedence.COMPARE,
        TokenKind.GT:     Precedence.COMPARE,
        TokenKind.BITOR:  Precedence.BIT_OR,
        TokenKind.XOR:    Precedence.XOR,
        TokenKind.BITAND: Precedence.BIT_AND,
        TokenKind.ADD:    Precedence.ADD_SUB,
        TokenKind.SUB:    Precedence.ADD_SUB,
        TokenKind.MUL:    Precedence.MUL_DIV,
        TokenKind.DIV:    Precedence.MUL_DIV,
        TokenKind.REM:    Precedence.MUL_DIV,
        TokenKind.POW:    Precedence.POWER,
        TokenKind.LPAREN: Precedence.POSTFIX,
        TokenKind.DOT:    Precedence.POSTFIX,
        TokenKind.INC:    Precedence.POSTFIX,
        TokenKind.DEC:    Precedence.POSTFIX,
        # fmt: on
    }

    BINARY_OPERATORS: dict[TokenKind, BinaryOperator] = {
        # fmt: off
        TokenKind.ADD:    BinaryOperator.ADD,
        TokenKind.SUB:    BinaryOperator.SUB,
        TokenKind.MUL:    BinaryOperator.MUL,
        TokenKind.DIV:    BinaryOperator.DIV,
        TokenKind.REM:    BinaryOperator.REM,
        TokenKind.POW:    BinaryOperator.POW,
        TokenKind.BITAND: BinaryOperator.BITAND,
        TokenKind.BITOR:  BinaryOperator.BITOR,
        TokenKind.XOR:    BinaryOperator.XOR,
        TokenKind.LT:     BinaryOperator.LT,
        TokenKind.GT:     BinaryOperator.GT,
        TokenKind.EQ:     BinaryOperator.EQ,
        TokenKind.NE:     BinaryOperator.NE,
        TokenKind.LE:     BinaryOperator.LE,
        TokenKind.GE:     BinaryOperator.GE,
        # fmt: on
    }

    DECLARED_KINDS: dict[TokenKind, DeclaredKind] = {
        TokenKind.NUM: DeclaredKind.NUM,
        TokenKind.STR: DeclaredKind.STR,
        TokenKind.VAR: DeclaredKind.VAR,
    }

    def __init__(self, lexer: Lexer):
        self.lexer: Lexer = lexer
        self.current_token: Token = Token(TokenKind.ILLEGAL, "DEFAULT CURRENT TOKEN")
        # Set while parsing the argument list of a print statement, where a
        # top-level `+` separates the printed expressions.
        self.print_separator: bool = False

        self._advance_token()

        self.parse_nud_functions: dict[TokenKind, Parser.ParseNud] = dict()
        self.parse_led_functions: dict[TokenKind, Parser.ParseLed] = dict()

        self._register_nud(TokenKind.IDENTIFIER, Parser.parse_expression_identifier)
        self._register_nud(TokenKind.NUMBER, Parser.parse_expression_number)
        self._register_nud(TokenKind.STRING, Parser.parse_expression_string)
        self._register_nud(TokenKind.LPAREN, Parser.parse_expression_grouped)
        self._register_nud(TokenKind.SUB, Parser.parse_expression_unary)
        self._register_nud(TokenKind.NOT, Parser.parse_expression_unary)

        for kind in Parser.BINARY_OPERATORS:
            self._register_led(kind, Parser.parse_expression_binary)
        self._register_led(TokenKind.LPAREN, Parser.parse_expression_function_call)
        self._register_led(TokenKind.DOT, Parser.parse_expression_access_module)
        self._register_led(TokenKind.INC, Parser.parse_expression_postfix)
        self._register_led(TokenKind.DEC, Parser.parse_expression_postfix)

    def _register_nud(self, kind: TokenKind, parse: "Parser.ParseNud") -> None:
        self.parse_nud_functions[kind] = parse

    def _register_led(self, kind: TokenKind, parse: "Parser.ParseLed") -> None:
        self.parse_led_functions[kind] = parse

    def _advance_token(self) -> Token:
        current_token = self.current_token
        self.current_token = self.lexer.next_token()
        return current_token

    def _check_current(self, kind: TokenKind) -> bool:
        return self.current_token.kind == kind

    def _expect_current(self, kind: TokenKind) -> Token:
        current = self.current_token
        if current.kind != kind:
            raise ParseError(
                current.location, f"expected {quote(kind)}, found {quote(current)}"
            )
        self._advance_token()
        return current

    def _get_precedence(self, kind: TokenKind) -> Precedence:
        if kind == TokenKind.ADD and self.print_separator:
            return Precedence.LOWEST
        return Parser.PRECEDENCES.get(kind, Precedence.LOWEST)

    def _parse_without_print_separator(self, parse: Callable[[], Any]) -> Any:
        saved = self.print_separator
        self.print_separator = False
        try:
            return parse()
        finally:
            self.print_separator = saved

    def parse_program(self) -> AstBlock:
        location = self.current_token.location
        statements: list[AstStatement] = list()
        while not self._check_current(TokenKind.EOF):
            statements.append(self.parse_statement())
        return AstBlock(location, statements)

    def parse_expression(
        self, precedence: Precedence = Precedence.LOWEST
    ) -> AstExpression:
        parse_nud = self.parse_nud_functions.get(self.current_token.kind)
        if parse_nud is None:
            raise ParseError(
                self.current_token.location,
                f"expected expression, found {quote(self.current_token)}",
            )
        expression = parse_nud(self)
        while precedence < self._get_precedence(self.current_token.kind):
            parse_led = self.parse_led_functions.get(self.current_token.kind, None)
            if parse_led is None:
                return expression
            expression = parse_led(self, expression)
        return expression

    def parse_expression_identifier(self) -> AstExpressionVariable:
        token = self._expect_current(TokenKind.IDENTIFIER)
        return AstExpressionVariable(token.location, None, token.literal)

    def parse_expression_number(self) -> AstExpressionNumber:
        token = self._expect_current(TokenKind.NUMBER)
        assert token.number is not None
        return AstExpressionNumber(token.location, Number(token.number))

    def parse_expression_string(self) -> AstExpressionString:
        token = self._expect_current(TokenKind.STRING)
        assert token.string is not None
        return AstExpressionString(token.location, String(token.string))

    def parse_expression_grouped(self) -> AstExpression:
        self._expect_current(TokenKind.LPAREN)
        expression = self._parse_without_print_separator(self.parse_expression)
        self._expect_current(TokenKind.RPAREN)
        return expression

    def parse_expression_unary(self) -> AstExpressionUnary:
        token = self._advance_token()
        op = UnaryOperator.NEG if token.kind == TokenKind.SUB else UnaryOperator.NOT
        expression = self.parse_expression(Precedence.PREFIX)
        return AstExpressionUnary(token.location, op, expression)

    def parse_expression_binary(self, lhs: AstExpression) -> AstExpressionBinary:
        token = self._advance_token()
        precedence = self._get_precedence(token.kind)
        if token.kind == TokenKind.POW:
            # Right associative.
            precedence = Precedence(precedence - 1)
        rhs = self.parse_expression(precedence)
        op = Parser.BINARY_OPERATORS[token.kind]
        return AstExpressionBinary(token.location, op, lhs, rhs)

    def parse_expression_function_call(
        self, lhs: AstExpression
    ) -> AstExpressionFunctionCall:
        location = self.current_token.location
        if not isinstance(lhs, AstExpressionVariable):
            raise ParseError(location, "expected function name before `(`")

        def parse_arguments() -> list[AstExpression]:
            self._expect_current(TokenKind.LPAREN)
            arguments: list[AstExpression] = list()
            while not self._check_current(TokenKind.RPAREN):
                if len(arguments) != 0:
                    self._expect_current(TokenKind.COMMA)
                arguments.append(self.parse_expression())
            self._expect_current(TokenKind.RPAREN)
            return arguments

        arguments = self._parse_without_print_separator(parse_arguments)
        return AstExpressionFunctionCall(location, lhs.module, lhs.name, arguments)

    def parse_expression_access_module(
        self, lhs: AstExpression
    ) -> AstExpressionVariable:
        location = self._expect_current(TokenKind.DOT).location
        if not isinstance(lhs, AstExpressionVariable) or lhs.module is not None:
            raise ParseError(location, "expected module name before `.`")
        name = self._expect_current(TokenKind.IDENTIFIER).literal
        return AstExpressionVariable(location, lhs.name, name)

    def parse_expression_postfix(self, lhs: AstExpression) -> AstExpressionPostfix:
        token = self._advance_token()
        if not isinstance(lhs, AstExpressionVariable) or lhs.module is not None:
            raise ParseError(token.location, "postfix target must be a variable")
        return AstExpressionPostfix(token.location, token.kind, lhs.name)

    def parse_block(self) -> AstBlock:
        location = self._expect_current(TokenKind.LBRACE).location
        statements: list[AstStatement] = list()
        while not self._check_current(TokenKind.RBRACE) and not self._check_current(
            TokenKind.EOF
        ):
            statements.append(self.parse_statement())
        self._expect_current(TokenKind.RBRACE)
        return AstBlock(location, statements)

    def parse_parenthesized(self) -> AstExpression:
        self._expect_current(TokenKind.LPAREN)
        expression = self.parse_expression()
        self._expect_current(TokenKind.RPAREN)
        return expression

    def parse_declared_kind(self) -> DeclaredKind:
        kind = Parser.DECLARED_KINDS.get(self.current_token.kind)
        if kind is None:
            raise ParseError(
                self.current_token.location,
                f"expected `num`, `str`, or `var`, found {quote(self.current_token)}",
            )
        self._advance_token()
        return kind

    def parse_statement(self) -> AstStatement:
        if self.current_token.kind in Parser.DECLARED_KINDS:
            return self.parse_statement_declaration()
        if self._check_current(TokenKind.PRINT):
            return self.parse_statement_print()
        if self._check_current(TokenKind.IF):
            return self.parse_statement_if_elif_else()
        if self._check_current(TokenKind.WHILE):
            return self.parse_statement_while()
        if self._check_current(TokenKind.FUN):
            return self.parse_statement_function()
        if self._check_current(TokenKind.RETURN):
            return self.parse_statement_return()
        if self._check_current(TokenKind.IMPORT):
            return self.parse_statement_import()
        if self._check_current(TokenKind.IDENTIFIER):
            return self.parse_statement_expression_or_assignment()
        raise ParseError(
            self.current_token.location,
            f"unexpected token {quote(self.current_token)}",
        )

    def parse_statement_declaration(self) -> AstStatementDeclaration:
        location = self.current_token.location
        kind = self.parse_declared_kind()
        name = self._expect_current(TokenKind.IDENTIFIER).literal
        self._expect_current(TokenKind.ASSIGN)
        expression = self.parse_expression()
        self._expect_current(TokenKind.SEMICOLON)
        return AstStatementDeclaration(location, kind, name, expression)

    def parse_statement_print(self) -> AstStatementPrint:
        location = self._expect_current(TokenKind.PRINT).location
        self._expect_current(TokenKind.LPAREN)
        expressions: list[AstExpression] = list()
        saved = self.print_separator
        self.print_separator = True
        try:
            while not self._check_current(TokenKind.RPAREN):
                if len(expressions) != 0:
                    self._expect_current(TokenKind.ADD)
                expressions.append(self.parse_expression())
        finally:
            self.print_separator = saved
        self._expect_current(TokenKind.RPAREN)
        self._expect_current(TokenKind.SEMICOLON)
        return AstStatementPrint(location, expressions)

    def parse_statement_if_elif_else(self) -> AstStatementIfElifElse:
        assert self.current_token.kind == TokenKind.IF
        location = self.current_token.location

        def parse_conditional() -> AstConditional:
            location = self._advance_token().location
            condition = self.parse_parenthesized()
            body = self.parse_block()
            return AstConditional(location, condition, body)

        conditionals: list[AstConditional] = list()
        while self._check_current(
            TokenKind.ELIF if len(conditionals) else TokenKind.IF
        ):
            conditionals.append(parse_conditional())
        if self._check_current(TokenKind.ELSE):
            self._expect_current(TokenKind.ELSE)
            else_block = self.parse_block()
        else:
            else_block = None

        return AstStatementIfElifElse(location, conditionals, else_block)

    def parse_statement_while(self) -> AstStatementWhile:
        location = self._expect_current(TokenKind.WHILE).location
        condition = self.parse_parenthesized()
        body = self.parse_block()
        return AstStatementWhile(location, condition, body)

    def parse_statement_function(self) -> AstStatementFunction:
        location = self._expect_current(TokenKind.FUN).location
        kind = DeclaredKind.VAR
        if self.current_token.kind in Parser.DECLARED_KINDS:
            kind = self.parse_declared_kind()
        name = self._expect_current(TokenKind.IDENTIFIER).literal
        self._expect_current(TokenKind.LPAREN)
        parameters: list[AstParameter] = list()
        while not self._check_current(TokenKind.RPAREN):
            if len(parameters) != 0:
                self._expect_current(TokenKind.COMMA)
            parameter_location = self.current_token.location
            parameter_kind = self.parse_declared_kind()
            parameter_name = self._expect_current(TokenKind.IDENTIFIER).literal
            if parameter_name in [x.name for x in parameters]:
                raise ParseError(
                    parameter_location,
                    f"duplicate function parameter {quote(parameter_name)}",
                )
            parameters.append(
                AstParameter(parameter_location, parameter_kind, parameter_name)
            )
        self._expect_current(TokenKind.RPAREN)
        body = self.parse_block()
        return AstStatementFunction(location, kind, name, parameters, body)

    def parse_statement_return(self) -> AstStatementReturn:
        location = self._expect_current(TokenKind.RETURN).location
        expression: Optional[AstExpression] = None
        if not self._check_current(TokenKind.SEMICOLON):
            expression = self.parse_expression()
        self._expect_current(TokenKind.SEMICOLON)
        return AstStatementReturn(location, expression)

    def parse_statement_import(self) -> AstStatementImport:
        location = self._expect_current(TokenKind.IMPORT).location
        name = self._expect_current(TokenKind.IDENTIFIER).literal
        self._expect_current(TokenKind.SEMICOLON)
        return AstStatementImport(location, name)

    def parse_statement_expression_or_assignment(self) -> AstStatement:
        location = self.current_token.location
        expression = self.parse_expression()
        if self._check_current(TokenKind.ASSIGN):
            if not isinstance(expression, AstExpressionVariable):
                raise ParseError(
                    self.current_token.location,
                    "assignment target must be a variable",
                )
            self._advance_token()
            value = self.parse_expression()
            self._expect_current(TokenKind.SEMICOLON)
            return AstStatementAssignment(location, expression, value)
        self._expect_current(TokenKind.SEMICOLON)
        return AstStatementExpression(location, expression)


def call(
    scope: Scope,
    location: Optional[SourceLocation],
    function: AstStatementFunction,
    arguments: list[AstExpression],
) -> Union[Value, Error]:
    if len(arguments) != len(function.parameters):
        return Error(
            location,
            f"invalid function argument count (expected {len(function.parameters)}, received {len(arguments)})",
        )
    # Arguments are evaluated in the caller's scope and bound into a fresh
    # environment that becomes the innermost scope of the body.
    env = Environment()
    for parameter, argument in zip(function.parameters, arguments):
        result = argument.eval(scope)
        if isinstance(result, Error):
            return result
        value = coerce(argument.location, parameter.kind, result)
        if isinstance(value, Error):
            return value
        env.let(parameter.name, value)
    result = function.body.eval(Scope(scope.interpreter, env))
    if isinstance(result, Error):
        result.trace.append(Error.TraceElement(location, function.name))
        return result
    produced = result.value if isinstance(result, Return) else Nil()
    return coerce(location, function.kind, produced)


class BuiltinSignatureError(Exception):
    def __init__(self, meta: FunctionMeta, why: str):
        super().__init__(f"bad builtin signature for {quote(meta.name)}: {why}")


def pack_arguments(meta: FunctionMeta, arguments: list[Value]) -> list[Any]:
    """
    Convert KL argument values into the Python values expected by the invoker
    of a builtin, driven entirely by the parameter kinds of its metadata. A
    trailing string array parameter receives every remaining argument.
    """
    packed: list[Any] = list()
    for index, kind in enumerate(meta.params):
        if kind == DataKind.STRING_ARRAY:
            if index != len(meta.params) - 1:
                raise BuiltinSignatureError(meta, "string array must be the final parameter")
            rest = arguments[index:]
            for argument in rest:
                if not isinstance(argument, String):
                    raise BuiltinSignatureError(
                        meta,
                        f"expected string argument, received {argument.typename()}",
                    )
            packed.append([argument.data for argument in rest])  # type: ignore
            return packed
        if index >= len(arguments):
            break
        argument = arguments[index]
        match kind:
            case DataKind.INT:
                if not isinstance(argument, Number) or not math.isfinite(argument.data):
                    raise BuiltinSignatureError(
                        meta,
                        f"expected finite number for argument {index}, received {quote(argument)}",
                    )
                packed.append(int(argument))
            case DataKind.DOUBLE:
                if not isinstance(argument, Number):
                    raise BuiltinSignatureError(
                        meta,
                        f"expected number for argument {index}, received {argument.typename()}",
                    )
                packed.append(float(argument))
            case DataKind.STRING:
                if not isinstance(argument, String):
                    raise BuiltinSignatureError(
                        meta,
                        f"expected string for argument {index}, received {argument.typename()}",
                    )
                packed.append(argument.data)
            case DataKind.VOID:
                raise BuiltinSignatureError(meta, "void parameter")
    if len(arguments) != len(meta.params):
        raise BuiltinSignatureError(
            meta,
            f"invalid argument count (expected {len(meta.params)}, received {len(arguments)})",
        )
    return packed


def unpack_result(meta: FunctionMeta, result: Any) -> Value:
    match meta.ret:
        case DataKind.INT:
            return Number(int(result))
        case DataKind.DOUBLE:
            return Number(result)
        case DataKind.STRING:
            return String(str(result))
        case DataKind.VOID:
            return Nil()
        case DataKind.STRING_ARRAY:
            raise BuiltinSignatureError(meta, "string array return")


def call_builtin(
    location: Optional[SourceLocation], meta: FunctionMeta, arguments: list[Value]
) -> Union[Value, Error]:
    try:
        return unpack_result(meta, meta.invoker(*pack_arguments(meta, arguments)))
    except Exception as e:
        message = f"{e}"
        if len(message) == 0:
            message = f"encountered exception {type(e).__name__}"
        return Error(location, message)


# Definitions of the modules available for import. Every interpreter builds
# its own copy of this table, so a running program never modifies it.
BUILTIN_MODULES: dict[str, Module] = dict()


def _builtin_module(name: str) -> Module:
    if name not in BUILTIN_MODULES:
        BUILTIN_MODULES[name] = Module(name, dict(), dict())
    return BUILTIN_MODULES[name]


# @builtin("math::log", [DataKind.DOUBLE, DataKind.DOUBLE], DataKind.DOUBLE)
# def builtin_math_log(n: float, base: float) -> float: ...
def builtin(nameof: str, params: list[DataKind], ret: DataKind):
    module, name = nameof.split("::")

    def decorator(func: Callable) -> Callable:
        meta = FunctionMeta(name, params, ret, func)
        _builtin_module(module).functions[name] = meta
        return func

    return decorator


def constant(nameof: str, value: Value) -> None:
    module, name = nameof.split("::")
    _builtin_module(module).constants[name] = value


DEFAULT_GNUPLOT = "gnuplot -persistent"


def plot(commands: list[str]) -> None:
    """
    Pipe a gnuplot script to a gnuplot process. The command defaults to a
    persistent gnuplot and may be overridden with KL_GNUPLOT. An empty
    KL_GNUPLOT selects the default.
    """
    command = shlex.split(os.environ.get("KL_GNUPLOT", "")) or shlex.split(
        DEFAULT_GNUPLOT
    )
    try:
        process = subprocess.Popen(command, stdin=subprocess.PIPE, text=True)
    except OSError:
        print(
            f"warning: {quote(' '.join(command))} not found, cannot plot",
            file=sys.stderr,
        )
        return
    process.communicate("".join(f"{x}\n" for x in commands))


PLOT_COLORS = ["red", "blue", "green", "magenta", "cyan", "orange", "black", "violet"]


@builtin("math::is_positive", [DataKind.DOUBLE], DataKind.INT)
def builtin_math_is_positive(n: float) -> int:
    return n > 0


@builtin("math::is_negative", [DataKind.DOUBLE], DataKind.INT)
def builtin_math_is_negative(n: float) -> int:
    return n < 0


@builtin("math::is_zero", [DataKind.DOUBLE], DataKind.INT)
def builtin_math_is_zero(n: float) -> int:
    return n == 0


@builtin("math::is_integer", [DataKind.DOUBLE], DataKind.INT)
def builtin_math_is_integer(n: float) -> int:
    return n.is_integer()


@builtin("math::is_float", [DataKind.DOUBLE], DataKind.INT)
def builtin_math_is_float(n: float) -> int:
    return not n.is_integer()


@builtin("math::is_even", [DataKind.DOUBLE], DataKind.INT)
def builtin_math_is_even(n: float) -> int:
    return n.is_integer() and int(n) % 2 == 0


@builtin("math::is_odd", [DataKind.DOUBLE], DataKind.INT)
def builtin_math_is_odd(n: float) -> int:
    return n.is_integer() and int(n) % 2 != 0


@builtin("math::is_palindrome", [DataKind.DOUBLE], DataKind.INT)
def builtin_math_is_palindrome(n: float) -> int:
    """
    Whether the decimal digits of the integer part of the number read the
    same forwards and backwards. The sign is ignored.
    """
    if not math.isfinite(n):
        return False
    text = str(abs(int(n)))
    return text == text[::-1]


@builtin("math::is_prime", [DataKind.DOUBLE], DataKind.INT)
def builtin_math_is_prime(n: float) -> int:
    if not n.is_integer() or n < 2:
        return False
    integer = int(n)
    for i in range(2, math.isqrt(integer) + 1):
        if integer % i == 0:
            return False
    return True


@builtin("math::floor", [DataKind.DOUBLE], DataKind.DOUBLE)
def builtin_math_floor(n: float) -> float:
    if not math.isfinite(n):
        return n
    return float(math.floor(n))


@builtin("math::ceil", [DataKind.DOUBLE], DataKind.DOUBLE)
def builtin_math_ceil(n: float) -> float:
    if not math.isfinite(n):
        return n
    return float(math.ceil(n))


@builtin("math::round", [DataKind.DOUBLE], DataKind.DOUBLE)
def builtin_math_round(n: float) -> float:
    floor = builtin_math_floor(n)
    ceil = builtin_math_ceil(n)
    # Ties go to the floor.
    if n - floor > ceil - n:
        return ceil
    return floor


@builtin("math::sqrt", [DataKind.DOUBLE], DataKind.DOUBLE)
def builtin_math_sqrt(n: float) -> float:
    if n < 0:
        raise ValueError("square root of negative number")
    return math.sqrt(n)


@builtin("math::cbrt", [DataKind.DOUBLE], DataKind.DOUBLE)
def builtin_math_cbrt(n: float) -> float:
    return math.cbrt(n)


@builtin("math::abs", [DataKind.DOUBLE], DataKind.DOUBLE)
def builtin_math_abs(n: float) -> float:
    return math.fabs(n)


@builtin("math::inverse", [DataKind.DOUBLE], DataKind.DOUBLE)
def builtin_math_inverse(n: float) -> float:
    if n == 0:
        return 0.0
    return 1.0 / n


@builtin("math::factorial", [DataKind.DOUBLE], DataKind.DOUBLE)
def builtin_math_factorial(n: float) -> float:
    if n < 0 or not n.is_integer():
        raise ValueError("factorial not defined for negative integers or non-integers")
    result = 1.0
    for i in range(2, int(n) + 1):
        result *= i
        if math.isinf(result):
            break
    return result


@builtin("math::gamma", [DataKind.DOUBLE], DataKind.DOUBLE)
def builtin_math_gamma(n: float) -> float:
    if n <= 0:
        raise ValueError("gamma not defined for negative numbers or zero")
    try:
        return math.gamma(n)
    except OverflowError:
        return math.inf


@builtin("math::fibonacci", [DataKind.DOUBLE], DataKind.DOUBLE)
def builtin_math_fibonacci(n: float) -> float:
    if n < 0:
        raise ValueError("fibonacci not defined for negative numbers")
    if n <= 1:
        return n
    # Every term past this index overflows a double.
    if n > 1476:
        return math.inf
    a, b = 0, 1
    for _ in range(2, int(n) + 1):
        a, b = b, a + b
    return float(b)


@builtin("math::ln", [DataKind.DOUBLE], DataKind.DOUBLE)
def builtin_math_ln(n: float) -> float:
    if n <= 0:
        raise ValueError("ln not defined for negative numbers or zero")
    return math.log(n)


@builtin("math::log10", [DataKind.DOUBLE], DataKind.DOUBLE)
def builtin_math_log10(n: float) -> float:
    if n <= 0:
        raise ValueError("log10 not defined for negative numbers or zero")
    return math.log10(n)


@builtin("math::log2", [DataKind.DOUBLE], DataKind.DOUBLE)
def builtin_math_log2(n: float) -> float:
    if n <= 0:
        raise ValueError("log2 not defined for negative numbers or zero")
    return math.log2(n)


@builtin("math::log", [DataKind.DOUBLE, DataKind.DOUBLE], DataKind.DOUBLE)
def builtin_math_log(n: float, base: float) -> float:
    if n <= 0:
        raise ValueError("log not defined for negative numbers or zero")
    if base <= 0 or base == 1:
        raise ValueError("log base must be positive and not equal to 1")
    return math.log(n) / math.log(base)


@builtin("math::plot_function", [DataKind.STRING], DataKind.VOID)
def builtin_math_plot_function(expression: str) -> None:
    plot(
        [
            f"set title 'Plot of {expression}'",
            "set xlabel 'X-axis'",
            "set ylabel 'Y-axis'",
            f"plot {expression} with lines lw 2 lc rgb 'blue'",
        ]
    )


@builtin("math::plot_multiple_functions", [DataKind.STRING_ARRAY], DataKind.VOID)
def builtin_math_plot_multiple_functions(expressions: list[str]) -> None:
    if len(expressions) == 0:
        raise ValueError("expected at least one function to plot")
    lines = [
        f"{x} with lines lw 2 lc rgb '{PLOT_COLORS[i % len(PLOT_COLORS)]}' title '{x}'"
        for i, x in enumerate(expressions)
    ]
    plot(
        [
            "set title 'Multiple Function Plot'",
            "set xlabel 'X-axis'",
            "set ylabel 'Y-axis'",
            "plot " + ", ".join(lines),
        ]
    )


@builtin("math::plot_2vars_function", [DataKind.STRING], DataKind.VOID)
def builtin_math_plot_2vars_function(expression: str) -> None:
    plot(
        [
            f"set title 'Plot of {expression}'",
            "set xlabel 'X-axis'",
            "set ylabel 'Y-axis'",
            "set zlabel 'Z-axis'",
            f"splot {expression} with pm3d",
        ]
    )


@builtin("math::plot_csv", [DataKind.STRING], DataKind.VOID)
def builtin_math_plot_csv(path: str) -> None:
    if not os.path.isfile(path):
        raise ValueError(f"cannot plot {quote(path)}, no such file")
    plot(
        [
            f"set title 'Plot of {path}'",
            "set datafile separator ','",
            "set xlabel 'X-axis'",
            "set ylabel 'Y-axis'",
            f"plot '{path}' using 1:2 with lines lw 2 lc rgb 'blue'",
        ]
    )


constant("math::pi", Number(math.pi))
constant("math::e", Number(math.e))
constant("math::phi", Number(1.618033988749894848))
constant("math::silver_ratio", Number(2.41421356237309504880))
constant("math::supergolden_ratio", Number(1.46557123187676802665))
constant("math::posinf", Number(math.inf))
constant("math::neginf", Number(-math.inf))


def reciprocal(n: float) -> float:
    if n == 0:
        return math.copysign(math.inf, n)
    return 1.0 / n


@builtin("trig::sin", [DataKind.DOUBLE], DataKind.DOUBLE)
def builtin_trig_sin(n: float) -> float:
    try:
        return math.sin(n)
    except ValueError:
        return math.nan


@builtin("trig::cos", [DataKind.DOUBLE], DataKind.DOUBLE)
def builtin_trig_cos(n: float) -> float:
    try:
        return math.cos(n)
    except ValueError:
        return math.nan


@builtin("trig::tan", [DataKind.DOUBLE], DataKind.DOUBLE)
def builtin_trig_tan(n: float) -> float:
    try:
        return math.tan(n)
    except ValueError:
        return math.nan


@builtin("trig::cot", [DataKind.DOUBLE], DataKind.DOUBLE)
def builtin_trig_cot(n: float) -> float:
    return reciprocal(builtin_trig_tan(n))


@builtin("trig::sec", [DataKind.DOUBLE], DataKind.DOUBLE)
def builtin_trig_sec(n: float) -> float:
    return reciprocal(builtin_trig_cos(n))


@builtin("trig::csc", [DataKind.DOUBLE], DataKind.DOUBLE)
def builtin_trig_csc(n: float) -> float:
    return reciprocal(builtin_trig_sin(n))


@builtin("trig::arcsin", [DataKind.DOUBLE], DataKind.DOUBLE)
def builtin_trig_arcsin(n: float) -> float:
    if n < -1 or n > 1:
        raise ValueError("arcsin argument must be in the range [-1, 1]")
    return math.asin(n)


@builtin("trig::arccos", [DataKind.DOUBLE], DataKind.DOUBLE)
def builtin_trig_arccos(n: float) -> float:
    if n < -1 or n > 1:
        raise ValueError("arccos argument must be in the range [-1, 1]")
    return math.acos(n)


@builtin("trig::arctan", [DataKind.DOUBLE], DataKind.DOUBLE)
def builtin_trig_arctan(n: float) -> float:
    return math.atan(n)


@builtin("trig::arccot", [DataKind.DOUBLE], DataKind.DOUBLE)
def builtin_trig_arccot(n: float) -> float:
    return math.atan(reciprocal(n))


@builtin("trig::arcsec", [DataKind.DOUBLE], DataKind.DOUBLE)
def builtin_trig_arcsec(n: float) -> float:
    if n > -1 and n < 1:
        raise ValueError("arcsec argument must be in the range (-inf, -1] U [1, +inf)")
    return math.acos(1.0 / n)


@builtin("trig::arccsc", [DataKind.DOUBLE], DataKind.DOUBLE)
def builtin_trig_arccsc(n: float) -> float:
    if n > -1 and n < 1:
        raise ValueError("arccsc argument must be in the range (-inf, -1] U [1, +inf)")
    return math.asin(1.0 / n)


@builtin("trig::sinh", [DataKind.DOUBLE], DataKind.DOUBLE)
def builtin_trig_sinh(n: float) -> float:
    return math.sinh(n)


@builtin("trig::cosh", [DataKind.DOUBLE], DataKind.DOUBLE)
def builtin_trig_cosh(n: float) -> float:
    return math.cosh(n)


@builtin("trig::tanh", [DataKind.DOUBLE], DataKind.DOUBLE)
def builtin_trig_tanh(n: float) -> float:
    return math.tanh(n)


@builtin("trig::coth", [DataKind.DOUBLE], DataKind.DOUBLE)
def builtin_trig_coth(n: float) -> float:
    if n == 0:
        raise ValueError("coth argument must be in the range (-inf, 0) U (0, +inf)")
    return 1.0 / math.tanh(n)


@builtin("trig::sech", [DataKind.DOUBLE], DataKind.DOUBLE)
def builtin_trig_sech(n: float) -> float:
    return 1.0 / math.cosh(n)


@builtin("trig::csch", [DataKind.DOUBLE], DataKind.DOUBLE)
def builtin_trig_csch(n: float) -> float:
    if n == 0:
        raise ValueError("csch argument must be in the range (-inf, 0) U (0, +inf)")
    return 1.0 / math.sinh(n)


@builtin("trig::arcsinh", [DataKind.DOUBLE], DataKind.DOUBLE)
def builtin_trig_arcsinh(n: float) -> float:
    return math.asinh(n)


@builtin("trig::arccosh", [DataKind.DOUBLE], DataKind.DOUBLE)
def builtin_trig_arccosh(n: float) -> float:
    if n < 1:
        raise ValueError("arccosh argument must be in the range [1, +inf)")
    return math.acosh(n)


@builtin("trig::arctanh", [DataKind.DOUBLE], DataKind.DOUBLE)
def builtin_trig_arctanh(n: float) -> float:
    if n <= -1 or n >= 1:
        raise ValueError("arctanh argument must be in the range (-1, 1)")
    return math.atanh(n)


@builtin("trig::arccoth", [DataKind.DOUBLE], DataKind.DOUBLE)
def builtin_trig_arccoth(n: float) -> float:
    if n >= -1 and n <= 1:
        raise ValueError("arccoth argument must be in the range (-inf, -1) U (1, +inf)")
    return math.atanh(1.0 / n)


@builtin("trig::arcsech", [DataKind.DOUBLE], DataKind.DOUBLE)
def builtin_trig_arcsech(n: float) -> float:
    if n <= 0 or n > 1:
        raise ValueError("arcsech argument must be in the range (0, 1]")
    return math.acosh(1.0 / n)


@builtin("trig::arccsch", [DataKind.DOUBLE], DataKind.DOUBLE)
def builtin_trig_arccsch(n: float) -> float:
    if n > -1 and n < 1:
        raise ValueError("arccsch argument must be in the range (-inf, -1] U [1, +inf)")
    return math.asinh(1.0 / n)


@builtin("trig::degrees_to_radians", [DataKind.DOUBLE], DataKind.DOUBLE)
def builtin_trig_degrees_to_radians(n: float) -> float:
    return n * math.pi / 180


@builtin("trig::radians_to_degrees", [DataKind.DOUBLE], DataKind.DOUBLE)
def builtin_trig_radians_to_degrees(n: float) -> float:
    return n * 180 / math.pi


constant("trig::pi", Number(math.pi))


def eval_source(
    source: str,
    interpreter: Optional[Interpreter] = None,
    loc: Optional[SourceLocation] = None,
) -> Optional[ControlFlow]:
    lexer = Lexer(source, loc)
    parser = Parser(lexer)
    program = parser.parse_program()
    return program.eval((interpreter or Interpreter()).scope())


def eval_file(
    path: Union[str, os.PathLike],
    interpreter: Optional[Interpreter] = None,
) -> Optional[ControlFlow]:
    with open(path, "r", encoding="utf-8") as f:
        source = f.read()
    return eval_source(source, interpreter, SourceLocation(str(path), 1))


def dump_tokens(source: str, loc: Optional[SourceLocation] = None) -> None:
    lexer = Lexer(source, loc)
    while True:
        token = lexer.next_token()
        line = token.location.line if token.location is not None else 0
        print(f"{line:>4} {token.kind.name:<10} {token}", file=sys.stderr)
        if token.kind == TokenKind.EOF:
            break


def enabled(name: str) -> bool:
    return os.environ.get(name, "") not in ("", "0")


def report(location: Optional[SourceLocation], message: str) -> None:
    if location is not None:
        print(f"[{location}] error: {message}", file=sys.stderr)
    else:
        print(f"error: {message}", file=sys.stderr)


# A KL call nests several Python frames. main runs the program on a worker
# thread with these limits.
RECURSION_LIMIT = 100_000
THREAD_STACK_SIZE = 512 * 1024 * 1024


def run(path: str) -> int:
    """
    Run the program at path and return the process exit status.
    """
    interpreter = Interpreter()
    try:
        if enabled("KL_TOKENS"):
            with open(path, "r", encoding="utf-8") as f:
                dump_tokens(f.read(), SourceLocation(path, 1))
        result = eval_file(path, interpreter)
    except (LexError, ParseError) as e:
        report(e.location, e.why)
        return 1
    except UnicodeDecodeError as e:
        report(None, f"cannot decode {quote(path)}: {e.reason}")
        return 1
    except OSError as e:
        report(None, f"cannot read {quote(path)}: {e.strerror}")
        return 1
    except RecursionError:
        report(None, "maximum recursion depth exceeded")
        return 1

    if isinstance(result, Error):
        report(result.location, result.message)
        for element in result.trace:
            s = f"...within {element.function}"
            if element.location is not None:
                s += f" called from {element.location}"
            print(s, file=sys.stderr)
        return 1

    if enabled("KL_DUMP"):
        interpreter.dump(sys.stderr)
    return 0


def main() -> None:
    if len(sys.argv) != 2:
        print("usage: kl <file.kl>", file=sys.stderr)
        sys.exit(1)

    sys.setrecursionlimit(RECURSION_LIMIT)
    threading.stack_size(THREAD_STACK_SIZE)
    status: list[int] = []
    thread = threading.Thread(target=lambda: status.append(run(sys.argv[1])))
    thread.start()
    thread.join()
    sys.exit(status[0] if status else 1)


if __name__ == "__main__":
    main()
