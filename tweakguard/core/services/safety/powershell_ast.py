"""
PowerShell syntax tree — a fail-closed parser for the safety validator.

The validator needs three questions answered about a script before it
is allowed anywhere near a host:

    - which commands are invoked, and is every command name a literal?
    - which variables are assigned a literal string?
    - which string literals and member invocations appear?

This module parses the PowerShell language subset that catalog scripts
are written in into a small node tree that answers those questions.
It is not an interpreter and never evaluates anything. Anything it does
not understand raises ``PowerShellParseError``; the validator treats a
parse error as a block, so unknown syntax can never slip through as
"no commands found".

Parsing is mode-aware, like PowerShell itself:

    statement start   decides between command mode and expression mode
    command mode      barewords are strings, ``-Name`` is a parameter
    expression mode   operators, member access, casts, literals

Usage:
    tree = parse_script(script)
    for command in tree.find_all(CommandAst):
        command.command_name   # None when the target is not a literal
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, fields
from typing import Iterator, TypeVar


class PowerShellParseError(Exception):
    """Raised when a script cannot be parsed."""

    def __init__(self, message: str, offset: int = 0, line: int = 1, column: int = 1):
        super().__init__(f"{message} (line {line}, column {column})")
        self.reason = message
        self.offset = offset
        self.line = line
        self.column = column


# ═══════════════════════════════════════════════════════════════════
#  Nodes
# ═══════════════════════════════════════════════════════════════════

_A = TypeVar("_A", bound="Ast")


@dataclass
class Ast:
    """Base node. Children are discovered from dataclass fields."""

    def children(self) -> Iterator[Ast]:
        for f in fields(self):
            yield from _walk_value(getattr(self, f.name))

    def find_all(self, node_type: type[_A]) -> Iterator[_A]:
        """Pre-order search of this node and everything below it."""
        stack: list[Ast] = [self]
        while stack:
            node = stack.pop()
            if isinstance(node, node_type):
                yield node
            stack.extend(reversed(list(node.children())))


def _walk_value(value: object) -> Iterator[Ast]:
    if isinstance(value, Ast):
        yield value
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from _walk_value(item)


@dataclass
class ScriptBlock(Ast):
    parameters: list[Parameter] = field(default_factory=list)
    statements: list[Ast] = field(default_factory=list)


@dataclass
class NamedBlock(Ast):
    name: str
    statements: list[Ast] = field(default_factory=list)


@dataclass
class Parameter(Ast):
    attributes: list[TypeLiteral]
    variable: Variable
    default: Ast | None = None


@dataclass
class Pipeline(Ast):
    elements: list[Ast]
    redirections: list[Redirection] = field(default_factory=list)


@dataclass
class CommandAst(Ast):
    elements: list[Ast]
    invocation_operator: str | None = None
    redirections: list[Redirection] = field(default_factory=list)

    @property
    def command_name(self) -> str | None:
        """The invoked name, or None when the target is not a literal."""
        if self.elements and isinstance(self.elements[0], StringConstant):
            return self.elements[0].value
        return None


@dataclass
class CommandParameter(Ast):
    name: str
    argument: Ast | None = None


@dataclass
class Redirection(Ast):
    operator: str
    target: Ast | None = None


@dataclass
class Assignment(Ast):
    target: Ast
    operator: str
    value: Ast
    value_text: str = ""


@dataclass
class If(Ast):
    clauses: list[tuple[Ast, ScriptBlock]]
    else_body: ScriptBlock | None = None


@dataclass
class Loop(Ast):
    kind: str                       # while, do-while, do-until, for, foreach
    body: ScriptBlock
    condition: Ast | None = None
    initializer: Ast | None = None
    iterator: Ast | None = None
    variable: Variable | None = None
    label: str | None = None


@dataclass
class Switch(Ast):
    condition: Ast
    clauses: list[tuple[Ast, ScriptBlock]]
    default: ScriptBlock | None = None
    flags: list[str] = field(default_factory=list)
    label: str | None = None


@dataclass
class Catch(Ast):
    types: list[TypeLiteral]
    body: ScriptBlock


@dataclass
class Try(Ast):
    body: ScriptBlock
    catches: list[Catch] = field(default_factory=list)
    finally_body: ScriptBlock | None = None


@dataclass
class FunctionDefinition(Ast):
    name: str
    body: ScriptBlock
    parameters: list[Parameter] = field(default_factory=list)
    is_filter: bool = False


@dataclass
class Flow(Ast):
    keyword: str                    # return, throw, exit, break, continue
    argument: Ast | None = None


@dataclass
class Trap(Ast):
    body: ScriptBlock
    type: TypeLiteral | None = None


@dataclass
class StringConstant(Ast):
    value: str
    kind: str = "bareword"          # bareword, single, double, here-single, here-double, verbatim


@dataclass
class ExpandableString(Ast):
    value: str
    nested: list[Ast]
    kind: str = "double"


@dataclass
class Variable(Ast):
    name: str
    splatted: bool = False


@dataclass
class Constant(Ast):
    value: str


@dataclass
class TypeLiteral(Ast):
    name: str


@dataclass
class Cast(Ast):
    type: TypeLiteral
    operand: Ast


@dataclass
class SubExpression(Ast):
    statements: list[Ast]


@dataclass
class ArrayExpression(Ast):
    statements: list[Ast]


@dataclass
class Paren(Ast):
    pipeline: Ast


@dataclass
class Hashtable(Ast):
    pairs: list[tuple[Ast, Ast]]


@dataclass
class ScriptBlockExpression(Ast):
    block: ScriptBlock


@dataclass
class MemberAccess(Ast):
    target: Ast
    member: Ast
    static: bool = False


@dataclass
class InvokeMember(Ast):
    target: Ast
    member: Ast
    arguments: list[Ast]
    static: bool = False

    @property
    def member_name(self) -> str | None:
        if isinstance(self.member, StringConstant):
            return self.member.value
        return None


@dataclass
class Index(Ast):
    target: Ast
    index: Ast


@dataclass
class Unary(Ast):
    operator: str
    operand: Ast
    postfix: bool = False


@dataclass
class Binary(Ast):
    left: Ast
    operator: str
    right: Ast


@dataclass
class ArrayLiteral(Ast):
    elements: list[Ast]


# ═══════════════════════════════════════════════════════════════════
#  Lexical tables
# ═══════════════════════════════════════════════════════════════════

_SPACE = " \t\f\v "
_NEWLINE = "\r\n"

# Characters that end a bareword in command mode
_GENERIC_STOP = frozenset(_SPACE + _NEWLINE + ";|&(){},<>")

_WORD_RE = re.compile(r"[A-Za-z]+")
_WORD_CONTINUATION = frozenset("_-.\\:/")
_IDENT_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_VAR_NAME_RE = re.compile(r"[A-Za-z0-9_]+")
_PARAM_NAME_RE = re.compile(r"[^\s:;|&(){},<>'\"]+")
_NUMBER_RE = re.compile(
    r"(?:0[xX][0-9a-fA-F]+|\d+(?:\.\d+)?|\.\d+)(?:[eE][+-]?\d+)?[lLdD]?(?:[kKmMgGtTpP][bB])?"
)
_REDIRECTION_RE = re.compile(r"(?:[*1-6])?(?:>>|>&[12]|>)")
_HASH_KEY_RE = re.compile(r"[^\s=;}]+")

_STRING_ESCAPES = {
    "0": "\0", "a": "\a", "b": "\b", "e": "\x1b", "f": "\f",
    "n": "\n", "r": "\r", "t": "\t", "v": "\v",
}

_CASE_OPERATORS = frozenset({
    "eq", "ne", "gt", "ge", "lt", "le", "like", "notlike", "match", "notmatch",
    "contains", "notcontains", "in", "notin", "replace", "split",
})
_OTHER_OPERATORS = frozenset({
    "join", "is", "isnot", "as", "and", "or", "xor", "band", "bor", "bxor",
    "shl", "shr", "f",
})
_UNARY_WORD_OPERATORS = frozenset({"not", "bnot", "split", "join"})

_ASSIGNMENT_OPERATORS = ("??=", "+=", "-=", "*=", "/=", "%=", "=")

_UNSUPPORTED_KEYWORDS = frozenset({
    "class", "enum", "using", "configuration", "workflow", "data", "parallel",
    "sequence", "inlinescript", "dynamicparam", "begin", "process", "end",
    "else", "elseif", "catch", "finally", "until", "in", "param",
})
_NAMED_BLOCKS = ("begin", "process", "end")


def _one_of(c: str, chars: str) -> bool:
    """``c in chars`` that is False at end of input, where peek() gives ''."""
    return c != "" and c in chars


def _is_var_start(c: str) -> bool:
    return c != "" and (c.isalnum() or c in "_?^$:{")


def _is_binary_word(word: str) -> bool:
    if word in _CASE_OPERATORS or word in _OTHER_OPERATORS:
        return True
    return len(word) > 1 and word[0] in "ci" and word[1:] in _CASE_OPERATORS


# ═══════════════════════════════════════════════════════════════════
#  Parser
# ═══════════════════════════════════════════════════════════════════


class _Parser:
    def __init__(self, source: str):
        self.src = source
        self.n = len(source)
        self.pos = 0

    # ── Low-level helpers ───────────────────────────────────────

    def peek(self, offset: int = 0) -> str:
        i = self.pos + offset
        return self.src[i] if 0 <= i < self.n else ""

    def error(self, message: str) -> PowerShellParseError:
        line = self.src.count("\n", 0, self.pos) + 1
        column = self.pos - (self.src.rfind("\n", 0, self.pos) + 1) + 1
        return PowerShellParseError(message, self.pos, line, column)

    def unexpected(self) -> PowerShellParseError:
        c = self.peek()
        if c == "":
            return self.error("Unexpected end of script.")
        return self.error(f"Unexpected token '{c}' in expression or statement.")

    def expect(self, char: str, message: str) -> None:
        if self.peek() != char:
            raise self.error(message)
        self.pos += 1

    def skip_ws(self, newlines: bool = False) -> None:
        src, n = self.src, self.n
        while self.pos < n:
            c = src[self.pos]
            if c in _SPACE:
                self.pos += 1
            elif c == "`" and self.pos + 1 < n and src[self.pos + 1] in _NEWLINE:
                self.pos += 2
                if src[self.pos - 1] == "\r" and self.pos < n and src[self.pos] == "\n":
                    self.pos += 1
            elif c == "#":
                while self.pos < n and src[self.pos] not in _NEWLINE:
                    self.pos += 1
            elif c == "<" and self.peek(1) == "#":
                end = src.find("#>", self.pos + 2)
                if end < 0:
                    raise self.error("Missing end of comment block '#>'.")
                self.pos = end + 2
            elif newlines and c in _NEWLINE:
                self.pos += 1
            else:
                break

    def skip_separators(self) -> None:
        while True:
            self.skip_ws(newlines=True)
            if self.peek() == ";":
                self.pos += 1
                continue
            break

    def at_statement_end(self) -> bool:
        c = self.peek()
        return c == "" or c in ";\r\n})"

    def peek_word(self) -> str:
        """Lowercased keyword-like word at the cursor, or ''."""
        m = _WORD_RE.match(self.src, self.pos)
        if not m:
            return ""
        end = m.end()
        if end < self.n and (self.src[end].isalnum() or self.src[end] in _WORD_CONTINUATION):
            return ""
        return m.group(0).lower()

    def consume_word(self, word: str) -> None:
        self.pos += len(word)

    # ── Script and block bodies ─────────────────────────────────

    def parse_script(self) -> ScriptBlock:
        block = self.parse_block_body(closing=None)
        self.skip_separators()
        if self.pos < self.n:
            raise self.unexpected()
        return block

    def parse_block_body(self, closing: str | None) -> ScriptBlock:
        self.skip_separators()
        parameters = self.try_param_block()
        self.skip_separators()

        if self.peek_word() in _NAMED_BLOCKS and self._named_block_follows():
            return ScriptBlock(parameters, self.parse_named_blocks(closing))

        return ScriptBlock(parameters, self.parse_statement_list(closing))

    def _named_block_follows(self) -> bool:
        save = self.pos
        self.consume_word(self.peek_word())
        self.skip_ws(newlines=True)
        follows = self.peek() == "{"
        self.pos = save
        return follows

    def parse_named_blocks(self, closing: str | None) -> list[Ast]:
        blocks: list[Ast] = []
        while True:
            self.skip_separators()
            c = self.peek()
            if c == "" or (closing is not None and c == closing):
                break
            word = self.peek_word()
            if word not in _NAMED_BLOCKS:
                raise self.unexpected()
            self.consume_word(word)
            self.skip_ws(newlines=True)
            body = self.parse_braced_block()
            blocks.append(NamedBlock(word, body.statements))
        if closing is not None and self.peek() != closing:
            raise self.error(f"Missing closing '{closing}' in statement block.")
        return blocks

    def try_param_block(self) -> list[Parameter]:
        save = self.pos
        while self.peek() == "[":
            self.parse_type_literal()
            self.skip_ws(newlines=True)
        if self.peek_word() == "param":
            self.consume_word("param")
            self.skip_ws(newlines=True)
            self.expect("(", "Missing '(' after 'param'.")
            return self.parse_parameter_list()
        self.pos = save
        return []

    def parse_parameter_list(self) -> list[Parameter]:
        """Parameters up to and including the closing ')'."""
        params: list[Parameter] = []
        self.skip_ws(newlines=True)
        if self.peek() == ")":
            self.pos += 1
            return params

        while True:
            attributes: list[TypeLiteral] = []
            while self.peek() == "[":
                attributes.append(self.parse_type_literal())
                self.skip_ws(newlines=True)
            if self.peek() != "$":
                raise self.error("Missing variable name in parameter list.")
            variable = self.parse_variable()
            self.skip_ws(newlines=True)
            default = None
            if self.peek() == "=":
                self.pos += 1
                self.skip_ws(newlines=True)
                default = self.parse_expression(allow_comma=False)
                self.skip_ws(newlines=True)
            params.append(Parameter(attributes, variable, default))

            if self.peek() == ",":
                self.pos += 1
                self.skip_ws(newlines=True)
                continue
            self.expect(")", "Missing ')' in parameter list.")
            return params

    def parse_statement_list(self, closing: str | None) -> list[Ast]:
        statements: list[Ast] = []
        while True:
            self.skip_separators()
            c = self.peek()
            if c == "":
                if closing is not None:
                    raise self.error(f"Missing closing '{closing}' in statement block.")
                break
            if closing is not None and c == closing:
                break
            if _one_of(c, ")}]"):
                raise self.unexpected()

            statements.append(self.parse_statement())

            self.skip_ws()
            c = self.peek()
            if c == "" or c in ";\r\n" or (closing is not None and c == closing):
                continue
            raise self.unexpected()
        return statements

    def parse_braced_block(self) -> ScriptBlock:
        self.expect("{", "Missing opening '{' of statement block.")
        block = self.parse_block_body(closing="}")
        self.expect("}", "Missing closing '}' in statement block.")
        return block

    # ── Statements ──────────────────────────────────────────────

    def parse_statement(self) -> Ast:
        self.skip_ws()
        label = None
        if self.peek() == ":" and _IDENT_RE.match(self.src, self.pos + 1):
            m = _IDENT_RE.match(self.src, self.pos + 1)
            label = m.group(0)
            self.pos = m.end()
            self.skip_ws()
            if self.peek_word() not in ("while", "do", "for", "foreach", "switch"):
                raise self.error(f"Label '{label}' must precede a loop or switch statement.")

        word = self.peek_word()
        if word == "if":
            return self.parse_if()
        if word == "while":
            return self.parse_while(label)
        if word == "do":
            return self.parse_do(label)
        if word == "for":
            return self.parse_for(label)
        if word == "foreach" and self._paren_follows(word):
            return self.parse_foreach(label)
        if word == "switch":
            return self.parse_switch(label)
        if word == "try":
            return self.parse_try()
        if word in ("function", "filter"):
            return self.parse_function(word)
        if word in ("return", "throw", "exit"):
            return self.parse_flow_with_pipeline(word)
        if word in ("break", "continue"):
            return self.parse_flow_with_label(word)
        if word == "trap":
            return self.parse_trap()
        if word in _UNSUPPORTED_KEYWORDS:
            raise self.error(f"Unsupported language construct '{word}'.")
        return self.parse_pipeline()

    def _paren_follows(self, word: str) -> bool:
        save = self.pos
        self.consume_word(word)
        self.skip_ws()
        follows = self.peek() == "("
        self.pos = save
        return follows

    def parse_condition(self, keyword: str) -> Ast:
        self.skip_ws(newlines=True)
        self.expect("(", f"Missing '(' after '{keyword}'.")
        self.skip_ws(newlines=True)
        condition = self.parse_pipeline()
        self.skip_ws(newlines=True)
        self.expect(")", f"Missing closing ')' after expression in '{keyword}' statement.")
        self.skip_ws(newlines=True)
        return condition

    def parse_if(self) -> If:
        self.consume_word("if")
        clauses = [(self.parse_condition("if"), self.parse_braced_block())]
        else_body = None
        while True:
            save = self.pos
            self.skip_ws(newlines=True)
            word = self.peek_word()
            if word == "elseif":
                self.consume_word(word)
                clauses.append((self.parse_condition("elseif"), self.parse_braced_block()))
                continue
            if word == "else":
                self.consume_word(word)
                self.skip_ws(newlines=True)
                else_body = self.parse_braced_block()
                break
            self.pos = save
            break
        return If(clauses, else_body)

    def parse_while(self, label: str | None) -> Loop:
        self.consume_word("while")
        condition = self.parse_condition("while")
        return Loop("while", self.parse_braced_block(), condition=condition, label=label)

    def parse_do(self, label: str | None) -> Loop:
        self.consume_word("do")
        self.skip_ws(newlines=True)
        body = self.parse_braced_block()
        self.skip_ws(newlines=True)
        word = self.peek_word()
        if word not in ("while", "until"):
            raise self.error("Missing 'while' or 'until' in do loop.")
        self.consume_word(word)
        self.skip_ws()
        self.expect("(", f"Missing '(' after '{word}' in do loop.")
        self.skip_ws(newlines=True)
        condition = self.parse_pipeline()
        self.skip_ws(newlines=True)
        self.expect(")", "Missing closing ')' in do loop condition.")
        return Loop(f"do-{word}", body, condition=condition, label=label)

    def parse_for(self, label: str | None) -> Loop:
        self.consume_word("for")
        self.skip_ws()
        self.expect("(", "Missing opening '(' after keyword 'for'.")
        parts: list[Ast | None] = []
        for i in range(3):
            self.skip_ws(newlines=True)
            if self.peek() in (";", ")"):
                parts.append(None)
            else:
                parts.append(self.parse_pipeline())
            self.skip_ws(newlines=True)
            if i < 2:
                if self.peek() == ";":
                    self.pos += 1
                elif self.peek() == ")":
                    parts.extend([None] * (2 - i))
                    break
                else:
                    raise self.unexpected()
        self.expect(")", "Missing closing ')' after 'for' loop header.")
        self.skip_ws(newlines=True)
        body = self.parse_braced_block()
        return Loop(
            "for", body, initializer=parts[0], condition=parts[1], iterator=parts[2], label=label,
        )

    def parse_foreach(self, label: str | None) -> Loop:
        self.consume_word("foreach")
        self.skip_ws()
        self.expect("(", "Missing opening '(' after keyword 'foreach'.")
        self.skip_ws(newlines=True)
        if self.peek() != "$":
            raise self.error("Missing variable name after 'foreach ('.")
        variable = self.parse_variable()
        self.skip_ws(newlines=True)
        if self.peek_word() != "in":
            raise self.error("Missing 'in' after variable in foreach loop.")
        self.consume_word("in")
        self.skip_ws(newlines=True)
        collection = self.parse_pipeline()
        self.skip_ws(newlines=True)
        self.expect(")", "Missing closing ')' in foreach loop.")
        self.skip_ws(newlines=True)
        body = self.parse_braced_block()
        return Loop("foreach", body, condition=collection, variable=variable, label=label)

    def parse_switch(self, label: str | None) -> Switch:
        self.consume_word("switch")
        self.skip_ws()
        flags: list[str] = []
        condition: Ast | None = None
        while self.peek() == "-":
            m = _WORD_RE.match(self.src, self.pos + 1)
            if not m:
                raise self.unexpected()
            flag = m.group(0).lower()
            flags.append(flag)
            self.pos = m.end()
            self.skip_ws()
            if flag == "file":
                condition = self.parse_command_value()
                self.skip_ws()
        if condition is None:
            self.expect("(", "Missing '(' after 'switch'.")
            self.skip_ws(newlines=True)
            condition = self.parse_pipeline()
            self.skip_ws(newlines=True)
            self.expect(")", "Missing closing ')' in switch condition.")
        self.skip_ws(newlines=True)
        self.expect("{", "Missing opening '{' in switch statement.")

        clauses: list[tuple[Ast, ScriptBlock]] = []
        default = None
        while True:
            self.skip_separators()
            c = self.peek()
            if c == "}":
                self.pos += 1
                break
            if c == "":
                raise self.error("Missing closing '}' in switch statement.")
            if self.peek_word() == "default":
                save = self.pos
                self.consume_word("default")
                self.skip_ws(newlines=True)
                if self.peek() == "{":
                    default = self.parse_braced_block()
                    continue
                self.pos = save
            key = self.parse_switch_key()
            self.skip_ws(newlines=True)
            clauses.append((key, self.parse_braced_block()))
        return Switch(condition, clauses, default, flags, label)

    def parse_switch_key(self) -> Ast:
        c = self.peek()
        if c == "{":
            return ScriptBlockExpression(self.parse_braced_block())
        if _one_of(c, "$'\"(@[") or c.isdigit():
            return self.parse_unary()
        return self.scan_generic_token()

    def parse_try(self) -> Try:
        self.consume_word("try")
        self.skip_ws(newlines=True)
        body = self.parse_braced_block()
        catches: list[Catch] = []
        finally_body = None
        while True:
            save = self.pos
            self.skip_ws(newlines=True)
            word = self.peek_word()
            if word == "catch":
                self.consume_word(word)
                self.skip_ws()
                types: list[TypeLiteral] = []
                while self.peek() == "[":
                    types.append(self.parse_type_literal())
                    self.skip_ws()
                    if self.peek() == ",":
                        self.pos += 1
                        self.skip_ws(newlines=True)
                self.skip_ws(newlines=True)
                catches.append(Catch(types, self.parse_braced_block()))
                continue
            if word == "finally":
                self.consume_word(word)
                self.skip_ws(newlines=True)
                finally_body = self.parse_braced_block()
                break
            self.pos = save
            break
        if not catches and finally_body is None:
            raise self.error("The Try statement is missing its Catch or Finally block.")
        return Try(body, catches, finally_body)

    def parse_function(self, keyword: str) -> FunctionDefinition:
        self.consume_word(keyword)
        self.skip_ws()
        start = self.pos
        while self.pos < self.n and self.src[self.pos] not in _SPACE + _NEWLINE + "({":
            self.pos += 1
        name = self.src[start:self.pos]
        if not name:
            raise self.error("Missing function name.")
        self.skip_ws()
        parameters: list[Parameter] = []
        if self.peek() == "(":
            self.pos += 1
            parameters = self.parse_parameter_list()
        self.skip_ws(newlines=True)
        body = self.parse_braced_block()
        return FunctionDefinition(name, body, parameters, is_filter=keyword == "filter")

    def parse_flow_with_pipeline(self, keyword: str) -> Flow:
        self.consume_word(keyword)
        self.skip_ws()
        if self.at_statement_end():
            return Flow(keyword)
        return Flow(keyword, self.parse_pipeline())

    def parse_flow_with_label(self, keyword: str) -> Flow:
        self.consume_word(keyword)
        self.skip_ws()
        if self.at_statement_end():
            return Flow(keyword)
        return Flow(keyword, self.parse_command_value())

    def parse_trap(self) -> Trap:
        self.consume_word("trap")
        self.skip_ws()
        trap_type = None
        if self.peek() == "[":
            trap_type = self.parse_type_literal()
            self.skip_ws(newlines=True)
        return Trap(self.parse_braced_block(), trap_type)

    # ── Pipelines ───────────────────────────────────────────────

    def parse_pipeline(self) -> Ast:
        elements: list[Ast] = []
        redirections: list[Redirection] = []
        first = True
        while True:
            self.skip_ws()
            if first and self.starts_expression():
                expr = self.parse_expression()
                end = self.pos
                self.skip_ws()
                operator = self.match_assignment_operator()
                if operator is not None:
                    return self.finish_assignment(expr, operator)
                self.pos = end
                elements.append(expr)
                redirections.extend(self.parse_redirections())
            else:
                elements.append(self.parse_command())
            end = self.pos
            first = False

            self.skip_ws()
            if self.peek() == "|" and self.peek(1) != "|":
                self.pos += 1
                self.skip_ws(newlines=True)
                continue
            self.pos = end
            break
        return Pipeline(elements, redirections)

    def finish_assignment(self, target: Ast, operator: str) -> Assignment:
        if not isinstance(target, (Variable, MemberAccess, Index, Cast, ArrayLiteral)):
            raise self.error("The assignment expression is not valid.")
        self.pos += len(operator)
        self.skip_ws(newlines=True)
        start = self.pos
        value = self.parse_statement()
        return Assignment(target, operator, value, self.src[start:self.pos].strip())

    def match_assignment_operator(self) -> str | None:
        for operator in _ASSIGNMENT_OPERATORS:
            if self.src.startswith(operator, self.pos):
                if operator == "=" and self.peek(1) == "=":
                    return None
                return operator
        return None

    def starts_expression(self) -> bool:
        c = self.peek()
        nxt = self.peek(1)
        if _one_of(c, "$'\"@([{!,"):
            return True
        if c.isdigit():
            m = _NUMBER_RE.match(self.src, self.pos)
            end = m.end() if m else self.pos
            if end >= self.n or self.src.startswith("..", end):
                return True
            return self.src[end] not in _WORD_CONTINUATION and not self.src[end].isalnum()
        if c == ".":
            return nxt.isdigit()
        if c == "-":
            if nxt.isdigit() or nxt == "." or (nxt == "-" and self.peek(2) == "$"):
                return True
            m = _WORD_RE.match(self.src, self.pos + 1)
            return bool(m) and m.group(0).lower() in _UNARY_WORD_OPERATORS
        if c == "+":
            return nxt == "+" or nxt.isdigit()
        return False

    def parse_redirections(self) -> list[Redirection]:
        found: list[Redirection] = []
        while True:
            save = self.pos
            self.skip_ws()
            redirection = self.try_redirection()
            if redirection is None:
                self.pos = save
                return found
            found.append(redirection)

    def try_redirection(self) -> Redirection | None:
        if self.peek() == "<":
            raise self.error("The '<' operator is reserved for future use.")
        m = _REDIRECTION_RE.match(self.src, self.pos)
        if not m:
            return None
        operator = m.group(0)
        self.pos = m.end()
        if "&" in operator:
            return Redirection(operator)
        self.skip_ws()
        if self.at_statement_end() or self.peek() == "|":
            raise self.error("Missing file specification after redirection operator.")
        return Redirection(operator, self.parse_command_value())

    # ── Commands ────────────────────────────────────────────────

    def parse_command(self) -> CommandAst:
        operator = None
        c = self.peek()
        if c == "&" and self.peek(1) != "&":
            operator = "&"
            self.pos += 1
            self.skip_ws()
        elif c == "." and _one_of(self.peek(1), _SPACE + "$'\"{("):
            operator = "."
            self.pos += 1
            self.skip_ws()

        if self.at_statement_end() or _one_of(self.peek(), "|&"):
            raise self.error("Missing expression after operator or pipe.")

        elements: list[Ast] = [self.parse_command_value()]
        redirections: list[Redirection] = []
        while True:
            end = self.pos
            self.skip_ws()
            c = self.peek()
            if c == "" or c in ";\r\n|)}":
                self.pos = end
                break
            if c == "&":
                raise self.error("The ampersand (&) character is not allowed here.")
            redirection = self.try_redirection()
            if redirection is not None:
                redirections.append(redirection)
                continue
            elements.append(self.parse_command_element())
        return CommandAst(elements, operator, redirections)

    def parse_command_element(self) -> Ast:
        c = self.peek()
        if c == "-":
            if self.src.startswith("--%", self.pos):
                start = self.pos + 3
                end = start
                while end < self.n and self.src[end] not in _NEWLINE:
                    end += 1
                self.pos = end
                return StringConstant(self.src[start:end].strip(), "verbatim")
            nxt = self.peek(1)
            if nxt.isalpha() or _one_of(nxt, "_?"):
                return self.parse_command_parameter()
        return self.parse_command_argument()

    def parse_command_parameter(self) -> CommandParameter:
        self.pos += 1
        m = _PARAM_NAME_RE.match(self.src, self.pos)
        name = m.group(0)
        self.pos = m.end()
        if self.peek() != ":":
            return CommandParameter(name)
        self.pos += 1
        self.skip_ws()
        if self.at_statement_end():
            raise self.error(f"Parameter '-{name}' requires an argument after ':'.")
        return CommandParameter(name, self.parse_command_argument())

    def parse_command_argument(self) -> Ast:
        first = self.parse_command_value()
        end = self.pos
        self.skip_ws()
        if self.peek() != ",":
            self.pos = end
            return first
        items = [first]
        while self.peek() == ",":
            self.pos += 1
            self.skip_ws(newlines=True)
            items.append(self.parse_command_value())
            end = self.pos
            self.skip_ws()
        self.pos = end
        return ArrayLiteral(items)

    def parse_command_value(self) -> Ast:
        c = self.peek()
        nxt = self.peek(1)
        if c == "'":
            return self.parse_single_quoted()
        if c == '"':
            return self.parse_double_quoted()
        if c == "@":
            if _one_of(nxt, "'\""):
                return self.parse_here_string()
            if nxt == "(":
                return self.parse_postfix(self.parse_array_expression(), command_mode=True)
            if nxt == "{":
                return self.parse_postfix(self.parse_hashtable(), command_mode=True)
            if _is_var_start(nxt):
                return self.parse_variable()
            return self.scan_generic_token()
        if c == "$":
            start = self.pos
            if nxt == "(":
                node = self.parse_postfix(self.parse_subexpression(), command_mode=True)
            elif _is_var_start(nxt):
                node = self.parse_postfix(self.parse_variable(), command_mode=True)
            else:
                return self.scan_generic_token()
            if self.pos < self.n and self.src[self.pos] not in _GENERIC_STOP:
                self.pos = start
                return self.scan_generic_token()
            return node
        if c == "(":
            return self.parse_postfix(self.parse_paren(), command_mode=True)
        if c == "{":
            return ScriptBlockExpression(self.parse_braced_block())
        if c.isdigit() or (_one_of(c, "-.") and (nxt.isdigit() or nxt == ".")):
            number = self.try_number(allow_sign=True)
            if number is not None:
                return number
        return self.scan_generic_token()

    def try_number(self, allow_sign: bool = False) -> Constant | None:
        start = self.pos
        offset = 1 if allow_sign and self.peek() == "-" else 0
        m = _NUMBER_RE.match(self.src, self.pos + offset)
        if not m:
            return None
        end = m.end()
        if end < self.n and self.src[end] not in _GENERIC_STOP:
            return None
        self.pos = end
        return Constant(self.src[start:end])

    def scan_generic_token(self) -> Ast:
        """A bareword argument; becomes expandable when it holds ``$``."""
        start = self.pos
        buf: list[str] = []
        nested: list[Ast] = []
        while self.pos < self.n:
            c = self.src[self.pos]
            if c in _GENERIC_STOP:
                break
            if c == "`":
                nxt = self.peek(1)
                if nxt == "" or nxt in _NEWLINE:
                    break
                buf.append(nxt)
                self.pos += 2
                continue
            if c == "'":
                buf.append(self.parse_single_quoted().value)
                continue
            if c == '"':
                part = self.parse_double_quoted()
                if isinstance(part, ExpandableString):
                    nested.extend(part.nested)
                buf.append(part.value)
                continue
            if c == "$":
                nxt = self.peek(1)
                part_start = self.pos
                if nxt == "(":
                    nested.append(self.parse_subexpression())
                    buf.append(self.src[part_start:self.pos])
                    continue
                if _is_var_start(nxt):
                    nested.append(self.parse_variable())
                    buf.append(self.src[part_start:self.pos])
                    continue
            buf.append(c)
            self.pos += 1
        if self.pos == start:
            raise self.unexpected()
        value = "".join(buf)
        if nested:
            return ExpandableString(value, nested, "bareword")
        return StringConstant(value, "bareword")

    # ── Expressions ─────────────────────────────────────────────

    def parse_expression(self, allow_comma: bool = True) -> Ast:
        left = self.parse_unary()
        while True:
            save = self.pos
            self.skip_ws()
            operator = self.match_binary_operator(allow_comma)
            if operator is None:
                self.pos = save
                return left
            self.skip_ws(newlines=True)
            right = self.parse_unary()
            if operator == ",":
                if isinstance(left, ArrayLiteral):
                    left.elements.append(right)
                else:
                    left = ArrayLiteral([left, right])
            else:
                left = Binary(left, operator, right)

    def match_binary_operator(self, allow_comma: bool) -> str | None:
        c = self.peek()
        nxt = self.peek(1)
        if c == "-":
            m = _WORD_RE.match(self.src, self.pos + 1)
            if m:
                word = m.group(0).lower()
                if _is_binary_word(word):
                    self.pos = m.end()
                    return f"-{word}"
                return None
            if _one_of(nxt, "=-"):
                return None
            self.pos += 1
            return "-"
        if _one_of(c, "+*/%"):
            if nxt == "=" or (c == "+" and nxt == "+") or (c == "*" and nxt == ">"):
                return None
            self.pos += 1
            return c
        if c == "." and nxt == ".":
            self.pos += 2
            return ".."
        if c == "," and allow_comma:
            self.pos += 1
            return ","
        if c == "?" and nxt == "?" and self.peek(2) != "=":
            self.pos += 2
            return "??"
        return None

    def parse_unary(self) -> Ast:
        c = self.peek()
        nxt = self.peek(1)
        if c == "!":
            self.pos += 1
            self.skip_ws()
            return Unary("!", self.parse_unary())
        if c == ",":
            self.pos += 1
            self.skip_ws(newlines=True)
            return ArrayLiteral([self.parse_unary()])
        if c == "-":
            if nxt == "-":
                self.pos += 2
                return Unary("--", self.parse_unary())
            m = _WORD_RE.match(self.src, self.pos + 1)
            if m and m.group(0).lower() in _UNARY_WORD_OPERATORS:
                self.pos = m.end()
                self.skip_ws(newlines=True)
                return Unary(f"-{m.group(0).lower()}", self.parse_unary())
            if m:
                raise self.unexpected()
            self.pos += 1
            return Unary("-", self.parse_unary())
        if c == "+":
            if nxt == "+":
                self.pos += 2
                return Unary("++", self.parse_unary())
            self.pos += 1
            return Unary("+", self.parse_unary())
        if c == "[":
            return self.parse_type_or_cast()
        return self.parse_postfix(self.parse_primary())

    def parse_type_or_cast(self) -> Ast:
        type_literal = self.parse_type_literal()
        c = self.peek()
        if c == ":" and self.peek(1) == ":":
            return self.parse_postfix(type_literal)
        if c != "" and (c in "[$'\"(@!+-" or c.isdigit()):
            return Cast(type_literal, self.parse_unary())
        save = self.pos
        self.skip_ws()
        c = self.peek()
        if c != "" and (c in "$'\"(@" or c.isdigit()):
            return Cast(type_literal, self.parse_unary())
        self.pos = save
        return type_literal

    def parse_primary(self) -> Ast:
        c = self.peek()
        nxt = self.peek(1)
        if c == "$":
            if nxt == "(":
                return self.parse_subexpression()
            if _is_var_start(nxt):
                return self.parse_variable()
            raise self.error("Variable reference is not valid.")
        if c == "@":
            if nxt == "(":
                return self.parse_array_expression()
            if nxt == "{":
                return self.parse_hashtable()
            if _one_of(nxt, "'\""):
                return self.parse_here_string()
            raise self.unexpected()
        if c == "'":
            return self.parse_single_quoted()
        if c == '"':
            return self.parse_double_quoted()
        if c == "(":
            return self.parse_paren()
        if c == "{":
            return ScriptBlockExpression(self.parse_braced_block())
        if c.isdigit() or (c == "." and nxt.isdigit()):
            m = _NUMBER_RE.match(self.src, self.pos)
            if m:
                self.pos = m.end()
                return Constant(m.group(0))
        raise self.unexpected()

    def parse_postfix(self, node: Ast, command_mode: bool = False) -> Ast:
        while True:
            c = self.peek()
            nxt = self.peek(1)
            if c == "." and nxt != ".":
                if not (nxt.isalpha() or _one_of(nxt, "_$'\"")):
                    return node
                self.pos += 1
                node = self.parse_member(node, static=False)
            elif c == ":" and nxt == ":":
                self.pos += 2
                node = self.parse_member(node, static=True)
            elif c == "[":
                self.pos += 1
                self.skip_ws(newlines=True)
                index = self.parse_expression()
                self.skip_ws(newlines=True)
                self.expect("]", "Missing ']' after array index expression.")
                node = Index(node, index)
            elif not command_mode and _one_of(c, "+-") and nxt == c:
                self.pos += 2
                node = Unary(c * 2, node, postfix=True)
            else:
                return node

    def parse_member(self, target: Ast, static: bool) -> Ast:
        c = self.peek()
        if c == "$":
            member: Ast = self.parse_variable()
        elif c == "'":
            member = self.parse_single_quoted()
        elif c == '"':
            member = self.parse_double_quoted()
        else:
            m = _IDENT_RE.match(self.src, self.pos)
            if not m:
                raise self.error("Missing property name after reference operator.")
            member = StringConstant(m.group(0), "bareword")
            self.pos = m.end()

        if self.peek() != "(":
            return MemberAccess(target, member, static)
        self.pos += 1
        return InvokeMember(target, member, self.parse_method_arguments(), static)

    def parse_method_arguments(self) -> list[Ast]:
        args: list[Ast] = []
        self.skip_ws(newlines=True)
        if self.peek() == ")":
            self.pos += 1
            return args
        while True:
            args.append(self.parse_expression(allow_comma=False))
            self.skip_ws(newlines=True)
            if self.peek() == ",":
                self.pos += 1
                self.skip_ws(newlines=True)
                continue
            self.expect(")", "Missing closing ')' in method invocation.")
            return args

    def parse_type_literal(self) -> TypeLiteral:
        start = self.pos
        depth = 0
        while self.pos < self.n:
            c = self.src[self.pos]
            if c in "'\"":
                self.skip_quoted_raw(c)
                continue
            if c == "[":
                depth += 1
            elif c == "]":
                depth -= 1
                if depth == 0:
                    self.pos += 1
                    break
            self.pos += 1
        else:
            raise self.error("Missing ']' after type name.")
        name = self.src[start + 1:self.pos - 1].strip()
        if not name:
            raise self.error("Missing type name after '['.")
        return TypeLiteral(name)

    def skip_quoted_raw(self, quote: str) -> None:
        self.pos += 1
        while self.pos < self.n:
            c = self.src[self.pos]
            if c == quote:
                if self.peek(1) == quote:
                    self.pos += 2
                    continue
                self.pos += 1
                return
            self.pos += 1
        raise self.error(f"The string is missing the terminator: {quote}.")

    def parse_variable(self) -> Variable:
        sigil = self.peek()
        self.pos += 1
        c = self.peek()
        if c == "{":
            end = self.src.find("}", self.pos + 1)
            if end < 0:
                raise self.error("Missing '}' in variable reference.")
            name = self.src[self.pos + 1:end]
            self.pos = end + 1
        elif _one_of(c, "$?^") and sigil == "$":
            name = c
            self.pos += 1
        else:
            m = _VAR_NAME_RE.match(self.src, self.pos)
            if not m:
                raise self.error("Variable reference is not valid.")
            name = m.group(0)
            self.pos = m.end()
            if self.peek() == ":" and self.peek(1) != ":":
                scoped = _VAR_NAME_RE.match(self.src, self.pos + 1)
                if scoped:
                    name = f"{name}:{scoped.group(0)}"
                    self.pos = scoped.end()
        if not name:
            raise self.error("Variable reference is not valid.")
        return Variable(name, splatted=sigil == "@")

    def parse_subexpression(self) -> SubExpression:
        self.pos += 2
        statements = self.parse_statement_list(closing=")")
        self.expect(")", "Missing closing ')' in subexpression.")
        return SubExpression(statements)

    def parse_array_expression(self) -> ArrayExpression:
        self.pos += 2
        statements = self.parse_statement_list(closing=")")
        self.expect(")", "Missing closing ')' in array subexpression.")
        return ArrayExpression(statements)

    def parse_paren(self) -> Paren:
        self.pos += 1
        self.skip_ws(newlines=True)
        if self.peek() == ")":
            raise self.error("An expression was expected after '('.")
        pipeline = self.parse_pipeline()
        self.skip_ws(newlines=True)
        self.expect(")", "Missing closing ')' in expression.")
        return Paren(pipeline)

    def parse_hashtable(self) -> Hashtable:
        self.pos += 2
        pairs: list[tuple[Ast, Ast]] = []
        while True:
            self.skip_separators()
            c = self.peek()
            if c == "}":
                self.pos += 1
                return Hashtable(pairs)
            if c == "":
                raise self.error("Missing closing '}' in hash literal.")
            if _one_of(c, "$'\"(@[") or c.isdigit():
                key = self.parse_unary()
            else:
                m = _HASH_KEY_RE.match(self.src, self.pos)
                key = StringConstant(m.group(0), "bareword")
                self.pos = m.end()
            self.skip_ws(newlines=True)
            self.expect("=", "Missing '=' operator after key in hash literal.")
            self.skip_ws(newlines=True)
            pairs.append((key, self.parse_statement()))
            self.skip_ws()
            if self.peek() not in ("", ";", "\r", "\n", "}"):
                raise self.unexpected()

    # ── Strings ─────────────────────────────────────────────────

    def parse_single_quoted(self) -> StringConstant:
        self.pos += 1
        buf: list[str] = []
        while self.pos < self.n:
            c = self.src[self.pos]
            if c == "'":
                if self.peek(1) == "'":
                    buf.append("'")
                    self.pos += 2
                    continue
                self.pos += 1
                return StringConstant("".join(buf), "single")
            buf.append(c)
            self.pos += 1
        raise self.error("The string is missing the terminator: '.")

    def parse_double_quoted(self) -> Ast:
        self.pos += 1
        return self.scan_expandable(here=False)

    def parse_here_string(self) -> Ast:
        quote = self.peek(1)
        self.pos += 2
        while self.peek() in _SPACE and self.peek() != "":
            self.pos += 1
        if self.peek() == "\r":
            self.pos += 1
        if self.peek() != "\n":
            raise self.error("No characters are allowed after a here-string header but before the end of the line.")
        self.pos += 1

        if quote == '"':
            return self.scan_expandable(here=True)

        terminator = re.compile(r"\r?\n'@")
        if self.src.startswith("'@", self.pos):
            self.pos += 2
            return StringConstant("", "here-single")
        m = terminator.search(self.src, self.pos)
        if not m:
            raise self.error("The string is missing the terminator: '@.")
        value = self.src[self.pos:m.start()]
        self.pos = m.end()
        return StringConstant(value, "here-single")

    def scan_expandable(self, here: bool) -> Ast:
        buf: list[str] = []
        nested: list[Ast] = []
        kind = "here-double" if here else "double"
        if here and self.src.startswith('"@', self.pos):
            self.pos += 2
            return StringConstant("", kind)
        while True:
            if self.pos >= self.n:
                raise self.error('The string is missing the terminator: "@.' if here
                                 else 'The string is missing the terminator: ".')
            c = self.src[self.pos]
            if here:
                if c in _NEWLINE:
                    m = re.compile(r'\r?\n"@').match(self.src, self.pos)
                    if m:
                        self.pos = m.end()
                        break
            elif c == '"':
                if self.peek(1) == '"':
                    buf.append('"')
                    self.pos += 2
                    continue
                self.pos += 1
                break
            if c == "`" and self.pos + 1 < self.n:
                escaped = self.src[self.pos + 1]
                buf.append(_STRING_ESCAPES.get(escaped, escaped))
                self.pos += 2
                continue
            if c == "$":
                nxt = self.peek(1)
                start = self.pos
                if nxt == "(":
                    nested.append(self.parse_subexpression())
                    buf.append(self.src[start:self.pos])
                    continue
                if nxt != "" and (nxt.isalnum() or nxt in "_?^${"):
                    nested.append(self.parse_variable())
                    buf.append(self.src[start:self.pos])
                    continue
            buf.append(c)
            self.pos += 1
        value = "".join(buf)
        if nested:
            return ExpandableString(value, nested, kind)
        return StringConstant(value, kind)


# ═══════════════════════════════════════════════════════════════════
#  Public API
# ═══════════════════════════════════════════════════════════════════


def parse_script(script: str) -> ScriptBlock:
    """Parse a script into its syntax tree.

    Raises:
        PowerShellParseError: On any syntax the parser does not accept.
    """
    return _Parser(script or "").parse_script()


def string_literals(tree: Ast) -> Iterator[StringConstant | ExpandableString]:
    """Every string node in the tree, including barewords."""
    for node in tree.find_all(Ast):
        if isinstance(node, (StringConstant, ExpandableString)):
            yield node
