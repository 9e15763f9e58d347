"""Standalone call enum generator for generated dispatch enums.

Rewrites the declaration of a generated dispatch enum such as

    pub enum Call<T: Config> {
        #[codec(skip)]
        __Ignore(PhantomData<(T,)>, Never),
        set_balance(T::AccountId, #[codec(compact)] T::Balance),
    }

into a standalone declaration whose context-bound field types are replaced by
deduplicated type parameters:

    #[derive(PartialEq, Eq, Clone, codec::Encode, codec::Decode)]
    pub enum Call<AccountId, Balance> {
        SetBalance(AccountId, #[codec(compact)] Balance),
    }

Usage:
    config = CallConfig().with_name("BalancesCall").push_derive("scale_info::TypeInfo")
    print(expand_source(source, config), end="")
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import NamedTuple


# ===--- Error contracts ---=== #


VALID_ERROR_CODES = {
    "MALFORMED_SOURCE",
    "UNSUPPORTED_FIELD_TYPE",
    "INVALID_IDENTIFIER",
    "NAMING_COLLISION",
}


class SourcePosition(NamedTuple):
    line: int | None = None
    column: int | None = None
    variant: str | None = None
    field_index: int | None = None

    def __str__(self) -> str:
        parts: list[str] = []
        if self.variant is not None:
            if self.field_index is not None:
                parts.append(f"variant '{self.variant}', field {self.field_index}")
            else:
                parts.append(f"variant '{self.variant}'")
        if self.line is not None:
            location = f"line {self.line}"
            if self.column is not None:
                location += f", column {self.column}"
            parts.append(location)
        return " at ".join(parts)


class ExpandError(Exception):
    def __init__(
        self,
        code: str,
        message: str,
        suggestion: str | None = None,
        position: SourcePosition | None = None,
    ):
        if code not in VALID_ERROR_CODES:
            raise ValueError(f"Unknown expand error code: {code}")
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion
        self.position = position


# ===--- Constants ---=== #

DEFAULT_TARGET_NAME = "Call"
DEFAULT_SERIALIZATION_NAMESPACE = "codec"
SENTINEL_VARIANT = "__Ignore"
CODEC_HELPER_ATTRIBUTE = "codec"
DEBUG_TRAIT_NAME = "RuntimeDebug"
BASELINE_DERIVES = ("PartialEq", "Eq", "Clone")

RUST_KEYWORDS = {
    "as", "async", "await", "break", "const", "continue", "crate", "dyn",
    "else", "enum", "extern", "false", "fn", "for", "if", "impl", "in",
    "let", "loop", "match", "mod", "move", "mut", "pub", "ref", "return",
    "self", "Self", "static", "struct", "super", "trait", "true", "type",
    "unsafe", "use", "where", "while", "abstract", "become", "box", "do",
    "final", "macro", "override", "priv", "try", "typeof", "unsized",
    "virtual", "yield",
}
# Keywords that may appear as segments of a path but never as a plain name.
PATH_KEYWORDS = {"crate", "self", "super", "Self"}

_IDENT_RE = re.compile(r"^(?:r#)?[A-Za-z_][A-Za-z0-9_]*$")
_ATTRIBUTE_PATH_RE = re.compile(
    r"(?:::\s*)?[A-Za-z_][A-Za-z0-9_]*(?:\s*::\s*[A-Za-z_][A-Za-z0-9_]*)*"
)
_DOC_TEXT_RE = re.compile(r"doc\s*=")
_WORD_RE = re.compile(r"[A-Z]+(?=[A-Z][a-z0-9])|[A-Z]?[a-z0-9]+|[A-Z]+")


def validate_identifier(
    name: str, what: str, position: SourcePosition | None = None
) -> str:
    if not isinstance(name, str) or not _IDENT_RE.match(name) or name == "_":
        raise ExpandError(
            "INVALID_IDENTIFIER",
            f"Invalid {what}: {name!r}",
            "Identifiers must match [A-Za-z_][A-Za-z0-9_]* and not be a bare '_'.",
            position,
        )
    bare = name.removeprefix("r#")
    if name.startswith("r#") and bare in PATH_KEYWORDS:
        raise ExpandError(
            "INVALID_IDENTIFIER",
            f"Invalid {what}: {name!r} cannot be a raw identifier",
            None,
            position,
        )
    if not name.startswith("r#") and name in RUST_KEYWORDS:
        raise ExpandError(
            "INVALID_IDENTIFIER",
            f"Invalid {what}: {name!r} is a reserved keyword",
            f"Use the raw form r#{name} or pick another name.",
            position,
        )
    return name


def validate_path(text: str, what: str) -> str:
    """Validate a `::`-separated path such as `frame_support::RuntimeDebug`.

    Path keywords (`crate`, `self`, `super`, `Self`) are accepted as segments.
    Returns the path with surrounding whitespace removed.
    """
    if not isinstance(text, str) or not text.strip():
        raise ExpandError("INVALID_IDENTIFIER", f"Invalid {what}: {text!r}")
    path = text.strip()
    segments = path.removeprefix("::").split("::")
    for segment in segments:
        segment = segment.strip()
        if segment in PATH_KEYWORDS:
            continue
        try:
            validate_identifier(segment, f"{what} segment")
        except ExpandError as err:
            raise ExpandError(
                "INVALID_IDENTIFIER",
                f"Invalid {what}: {text!r} ({err.message})",
                err.suggestion,
            ) from err
    return "::".join(s.strip() for s in path.split("::"))


def to_pascal_case(name: str) -> str:
    words = _WORD_RE.findall(name)
    return "".join(word[:1].upper() + word[1:].lower() for word in words)


def to_snake_case(name: str) -> str:
    return re.sub(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])", "_", name).lower()


# ===--- Type expressions ---=== #


@dataclass(frozen=True)
class Lifetime:
    name: str


@dataclass(frozen=True)
class ConstArg:
    value: str


@dataclass(frozen=True)
class PathSegment:
    name: str
    args: tuple[GenericArg, ...] = ()


@dataclass(frozen=True)
class QualifiedSelf:
    """The `<T as Trait>` prefix of a qualified path."""

    ty: TypeExpr
    trait_path: TypePath | None = None


@dataclass(frozen=True)
class TypePath:
    segments: tuple[PathSegment, ...]
    qself: QualifiedSelf | None = None
    leading_colon: bool = False

    @property
    def last_name(self) -> str:
        return self.segments[-1].name


@dataclass(frozen=True)
class TupleType:
    elems: tuple[TypeExpr, ...]


@dataclass(frozen=True)
class ReferenceType:
    inner: TypeExpr
    lifetime: str | None = None
    mutable: bool = False


@dataclass(frozen=True)
class ArrayType:
    """`[T; N]`, or a slice `[T]` when length is None."""

    elem: TypeExpr
    length: str | None = None


@dataclass(frozen=True)
class PointerType:
    inner: TypeExpr
    mutable: bool = False


@dataclass(frozen=True)
class FnPointerType:
    params: tuple[TypeExpr, ...]
    output: TypeExpr | None = None


@dataclass(frozen=True)
class TraitObjectType:
    keyword: str
    bounds: tuple[TypePath | Lifetime, ...]


TypeExpr = (
    TypePath
    | TupleType
    | ReferenceType
    | ArrayType
    | PointerType
    | FnPointerType
    | TraitObjectType
)
GenericArg = TypeExpr | Lifetime | ConstArg


def single_segment_path(name: str) -> TypePath:
    return TypePath((PathSegment(name),))


# ===--- Input model ---=== #


@dataclass(frozen=True)
class Attribute:
    """One outer attribute.

    Attributes:
        path: Attribute path, e.g. "codec", "doc", "derive".
        meta: Text between `#[` and `]`, e.g. "codec(compact)".
        comment: Body of a `///` or `/** */` doc comment (text between the
            delimiters) when the attribute was written in comment form;
            None otherwise.
        block: True when the comment form was `/** ... */`.
    """

    path: str
    meta: str
    comment: str | None = None
    block: bool = False

    @property
    def is_doc(self) -> bool:
        # `#[doc(hidden)]` and friends are directives, not documentation text.
        return self.path == "doc" and _DOC_TEXT_RE.match(self.meta) is not None

    @classmethod
    def from_meta(cls, meta: str) -> Attribute | None:
        match = _ATTRIBUTE_PATH_RE.match(meta)
        if match is None:
            return None
        path = re.sub(r"\s+", "", match.group())
        return cls(path=path, meta=meta)

    @classmethod
    def from_doc_comment(cls, body: str, block: bool = False) -> Attribute:
        escaped = body.replace("\\", "\\\\").replace('"', '\\"')
        return cls(path="doc", meta=f'doc = "{escaped}"', comment=body, block=block)


@dataclass(frozen=True)
class GenericParam:
    name: str
    kind: str = "type"
    bounds: str = ""
    default: str | None = None


@dataclass(frozen=True)
class Field:
    ty: TypeExpr
    attributes: tuple[Attribute, ...] = ()
    line: int | None = None
    column: int | None = None


@dataclass(frozen=True)
class Variant:
    name: str
    fields: tuple[Field, ...] = ()
    attributes: tuple[Attribute, ...] = ()
    line: int | None = None


@dataclass(frozen=True)
class EnumDeclaration:
    name: str
    variants: tuple[Variant, ...]
    generics: tuple[GenericParam, ...] = ()
    attributes: tuple[Attribute, ...] = ()
    visibility: str = ""
    where_clause: str | None = None

    @property
    def context_param(self) -> str | None:
        """Name of the bound context type: the first type parameter."""
        for param in self.generics:
            if param.kind == "type":
                return param.name
        return None


# ===--- Configuration ---=== #


@dataclass(frozen=True)
class FieldStyle:
    """How rewritten fields are laid out in each output variant.

    Unnamed (the default) emits tuple variants. Named emits struct variants
    whose field names come from `naming_rule` applied to the last path segment
    of the rewritten field type (snake_case when no rule is given).
    """

    named: bool = False
    naming_rule: Callable[[str], str] | None = None

    @classmethod
    def unnamed(cls) -> FieldStyle:
        return cls()

    @classmethod
    def named_fields(cls, naming_rule: Callable[[str], str] | None = None) -> FieldStyle:
        return cls(named=True, naming_rule=naming_rule)


@dataclass(frozen=True)
class CallConfig:
    """Rewrite options, built with chained setters before the pass runs.

    Every setter returns a new CallConfig; an instance never changes once
    built. Values are not validated here: invalid names surface as
    ExpandError while the pass runs.

    Attributes:
        target_name: Name of the emitted enum. None means "Call".
        variant_name_rule: Maps a source variant name to the output name.
            None means to_pascal_case.
        generic_name_rule: Maps a context-bound TypePath to the name of its
            generic parameter. None means the last path segment.
        field_style: Tuple (default) or named variant fields.
        keep_comments: Keep `doc` attributes and `///` comments.
        serialization_namespace: Crate path used for the Encode/Decode derives.
        debug_trait_source: Module path exporting RuntimeDebug. When set,
            `<source>::RuntimeDebug` is derived.
        extra_attributes: Declaration attributes appended after the source's.
        extra_derives: Trait paths appended to the derive list.
    """

    target_name: str | None = None
    variant_name_rule: Callable[[str], str] | None = None
    generic_name_rule: Callable[[TypePath], str] | None = None
    field_style: FieldStyle = field(default_factory=FieldStyle)
    keep_comments: bool = False
    serialization_namespace: str = DEFAULT_SERIALIZATION_NAMESPACE
    debug_trait_source: str | None = None
    extra_attributes: tuple[str, ...] = ()
    extra_derives: tuple[str, ...] = ()

    def with_name(self, name: str) -> CallConfig:
        return replace(self, target_name=name)

    def with_variant_name(self, rule: Callable[[str], str]) -> CallConfig:
        return replace(self, variant_name_rule=rule)

    def with_generic_name(self, rule: Callable[[TypePath], str]) -> CallConfig:
        return replace(self, generic_name_rule=rule)

    def with_field_style(self, style: FieldStyle) -> CallConfig:
        return replace(self, field_style=style)

    def with_comments(self, keep: bool = True) -> CallConfig:
        return replace(self, keep_comments=keep)

    def with_serialization_namespace(self, namespace: str) -> CallConfig:
        return replace(self, serialization_namespace=namespace)

    def with_debug_trait_source(self, module: str | None) -> CallConfig:
        return replace(self, debug_trait_source=module)

    def push_attribute(self, attribute: str) -> CallConfig:
        return replace(self, extra_attributes=self.extra_attributes + (attribute,))

    def push_derive(self, derive: str) -> CallConfig:
        return replace(self, extra_derives=self.extra_derives + (derive,))

    def parse(self, content: str) -> ParsedCall:
        """Parse a previously extracted call enum declaration."""
        return ParsedCall(config=self, declaration=parse_call_source(content))


# ===--- Tokenizer ---=== #


class Token(NamedTuple):
    kind: str
    value: str
    line: int
    column: int
    start: int
    end: int


_TOKEN_RE = re.compile(
    r"""
    (?P<space>\s+)
    |(?P<doc>///(?!/)[^\n]*|/\*\*(?![*/]).*?\*/)
    |(?P<comment>//[^\n]*|/\*.*?\*/)
    |(?P<literal>"(?:\\.|[^"\\])*"|'(?:\\.|[^'\\])'|[0-9][0-9A-Za-z_]*)
    |(?P<lifetime>'[A-Za-z_][A-Za-z0-9_]*)
    |(?P<ident>(?:r\#)?[A-Za-z_][A-Za-z0-9_]*)
    |(?P<punct>::|->|=>|[^\sA-Za-z0-9_])
    """,
    re.VERBOSE | re.DOTALL,
)
_OPENERS = {"(", "[", "{"}
_CLOSERS = {")", "]", "}"}


def tokenize(source: str) -> list[Token]:
    tokens: list[Token] = []
    pos = 0
    line = 1
    line_start = 0
    while pos < len(source):
        match = _TOKEN_RE.match(source, pos)
        kind = match.lastgroup
        text = match.group()
        if kind not in ("space", "comment"):
            tokens.append(
                Token(kind, text, line, pos - line_start + 1, pos, match.end())
            )
        newlines = text.count("\n")
        if newlines:
            line += newlines
            line_start = pos + text.rfind("\n") + 1
        pos = match.end()
    tokens.append(Token("eof", "", line, pos - line_start + 1, pos, pos))
    return tokens


# ===--- Parser ---=== #


class _CallParser:
    def __init__(self, source: str):
        self.source = source
        self.tokens = tokenize(source)
        self.pos = 0

    def peek(self, offset: int = 0) -> Token:
        return self.tokens[min(self.pos + offset, len(self.tokens) - 1)]

    def advance(self) -> Token:
        tok = self.peek()
        if tok.kind != "eof":
            self.pos += 1
        return tok

    def at(self, value: str) -> bool:
        tok = self.peek()
        return tok.kind in ("punct", "ident") and tok.value == value

    def error(
        self, message: str, token: Token | None = None, suggestion: str | None = None
    ) -> ExpandError:
        tok = token or self.peek()
        found = "end of input" if tok.kind == "eof" else repr(tok.value)
        return ExpandError(
            "MALFORMED_SOURCE",
            f"{message}, found {found}",
            suggestion,
            SourcePosition(tok.line, tok.column),
        )

    def expect(self, value: str) -> Token:
        if not self.at(value):
            raise self.error(f"Expected {value!r}")
        return self.advance()

    def expect_ident(self, what: str) -> Token:
        tok = self.peek()
        if tok.kind != "ident":
            raise self.error(f"Expected {what}")
        return self.advance()

    def expect_end(self) -> None:
        if self.peek().kind != "eof":
            raise self.error("Unexpected trailing input")

    def raw_until(self, stops: set[str], angles: bool = False) -> str:
        """Consume a balanced token run up to a top-level stop token.

        Returns the source text of the consumed run, stripped. The stop token
        itself is not consumed.
        """
        first = self.peek()
        last_end = first.start
        depth = 0
        while True:
            tok = self.peek()
            if tok.kind == "eof":
                raise self.error("Unbalanced delimiters")
            if tok.kind == "punct":
                if depth == 0 and tok.value in stops:
                    break
                if tok.value in _OPENERS or (angles and tok.value == "<"):
                    depth += 1
                elif tok.value in _CLOSERS or (angles and tok.value == ">"):
                    depth -= 1
                    if depth < 0:
                        raise self.error("Unbalanced delimiters")
            last_end = tok.end
            self.advance()
        return self.source[first.start:last_end].strip()

    # Declarations

    def parse_declaration(self) -> EnumDeclaration:
        attributes = self.parse_attributes()
        visibility = self.parse_visibility()
        if not self.at("enum"):
            raise self.error(
                "Expected 'enum'",
                suggestion="Input must be exactly one enum declaration.",
            )
        self.advance()
        name = self.expect_ident("enum name").value
        generics: tuple[GenericParam, ...] = ()
        if self.at("<"):
            generics = self.parse_generic_params()
        where_clause = None
        if self.at("where"):
            self.advance()
            where_clause = self.raw_until({"{"}, angles=True)
        self.expect("{")
        variants: list[Variant] = []
        while not self.at("}"):
            variants.append(self.parse_variant())
            if not self.at(","):
                break
            self.advance()
        self.expect("}")
        self.expect_end()
        return EnumDeclaration(
            name=name,
            variants=tuple(variants),
            generics=generics,
            attributes=attributes,
            visibility=visibility,
            where_clause=where_clause,
        )

    def parse_attributes(self) -> tuple[Attribute, ...]:
        attributes: list[Attribute] = []
        while True:
            tok = self.peek()
            if tok.kind == "doc":
                self.advance()
                if tok.value.startswith("/**"):
                    attributes.append(Attribute.from_doc_comment(tok.value[3:-2], block=True))
                else:
                    attributes.append(Attribute.from_doc_comment(tok.value[3:]))
            elif self.at("#"):
                hash_tok = self.advance()
                if self.at("!"):
                    raise self.error("Inner attributes are not allowed here")
                self.expect("[")
                meta = self.raw_until({"]"})
                self.expect("]")
                attribute = Attribute.from_meta(meta)
                if attribute is None:
                    raise self.error("Attribute must start with a path", hash_tok)
                attributes.append(attribute)
            else:
                return tuple(attributes)

    def parse_visibility(self) -> str:
        if not self.at("pub"):
            return ""
        self.advance()
        if not self.at("("):
            return "pub"
        self.advance()
        scope = re.sub(r"\s+", " ", self.raw_until({")"}))
        self.expect(")")
        return f"pub({scope})"

    def parse_generic_params(self) -> tuple[GenericParam, ...]:
        self.expect("<")
        params: list[GenericParam] = []
        while not self.at(">"):
            tok = self.peek()
            if tok.kind == "lifetime":
                self.advance()
                name, kind = tok.value, "lifetime"
            elif self.at("const"):
                self.advance()
                name, kind = self.expect_ident("const parameter name").value, "const"
            elif tok.kind == "ident":
                self.advance()
                name, kind = tok.value, "type"
            else:
                raise self.error("Expected a generic parameter")
            bounds = ""
            if self.at(":"):
                self.advance()
                bounds = self.raw_until({",", ">", "="}, angles=True)
            default = None
            if self.at("="):
                self.advance()
                default = self.raw_until({",", ">"}, angles=True)
            params.append(GenericParam(name, kind, bounds, default))
            if not self.at(","):
                break
            self.advance()
        self.expect(">")
        return tuple(params)

    def parse_variant(self) -> Variant:
        attributes = self.parse_attributes()
        name_tok = self.expect_ident("variant name")
        fields: list[Field] = []
        if self.at("("):
            self.advance()
            while not self.at(")"):
                field_attributes = self.parse_attributes()
                start = self.peek()
                ty = self.parse_type()
                fields.append(Field(ty, field_attributes, start.line, start.column))
                if not self.at(","):
                    break
                self.advance()
            self.expect(")")
        elif self.at("{"):
            raise self.error(
                f"Variant {name_tok.value!r} uses named fields",
                suggestion="Only tuple variants are supported in the source enum.",
            )
        if self.at("="):
            raise self.error(f"Variant {name_tok.value!r} has an explicit discriminant")
        return Variant(name_tok.value, tuple(fields), attributes, name_tok.line)

    # Types

    def parse_type(self) -> TypeExpr:
        tok = self.peek()
        if self.at("("):
            return self._parse_tuple()
        if self.at("&"):
            self.advance()
            lifetime = None
            if self.peek().kind == "lifetime":
                lifetime = self.advance().value
            mutable = self.at("mut")
            if mutable:
                self.advance()
            return ReferenceType(self.parse_type(), lifetime, mutable)
        if self.at("*"):
            self.advance()
            if not (self.at("const") or self.at("mut")):
                raise self.error("Expected 'const' or 'mut' after '*'")
            mutable = self.advance().value == "mut"
            return PointerType(self.parse_type(), mutable)
        if self.at("["):
            self.advance()
            elem = self.parse_type()
            length = None
            if self.at(";"):
                self.advance()
                length = self.raw_until({"]"})
            self.expect("]")
            return ArrayType(elem, length)
        if self.at("fn") or self.at("unsafe") or self.at("extern"):
            return self._parse_fn_pointer()
        if self.at("dyn") or self.at("impl"):
            keyword = self.advance().value
            bounds = [self._parse_bound()]
            while self.at("+"):
                self.advance()
                bounds.append(self._parse_bound())
            return TraitObjectType(keyword, tuple(bounds))
        if self.at("<"):
            return self._parse_qualified_path()
        if self.at("::") or tok.kind == "ident":
            return self._parse_path()
        raise self.error("Expected a type")

    def _parse_tuple(self) -> TypeExpr:
        self.expect("(")
        elems: list[TypeExpr] = []
        trailing = False
        while not self.at(")"):
            elems.append(self.parse_type())
            trailing = False
            if not self.at(","):
                break
            self.advance()
            trailing = True
        self.expect(")")
        if len(elems) == 1 and not trailing:
            return elems[0]
        return TupleType(tuple(elems))

    def _parse_fn_pointer(self) -> FnPointerType:
        if self.at("unsafe"):
            self.advance()
        if self.at("extern"):
            self.advance()
            if self.peek().kind == "literal":
                self.advance()
        self.expect("fn")
        self.expect("(")
        params: list[TypeExpr] = []
        while not self.at(")"):
            params.append(self.parse_type())
            if not self.at(","):
                break
            self.advance()
        self.expect(")")
        output = None
        if self.at("->"):
            self.advance()
            output = self.parse_type()
        return FnPointerType(tuple(params), output)

    def _parse_bound(self) -> TypePath | Lifetime:
        if self.peek().kind == "lifetime":
            return Lifetime(self.advance().value)
        return self._parse_path()

    def _parse_qualified_path(self) -> TypePath:
        self.expect("<")
        self_ty = self.parse_type()
        trait_path = None
        if self.at("as"):
            self.advance()
            trait_path = self._parse_path()
        self.expect(">")
        self.expect("::")
        rest = self._parse_path()
        return TypePath(rest.segments, qself=QualifiedSelf(self_ty, trait_path))

    def _parse_path(self) -> TypePath:
        leading_colon = self.at("::")
        if leading_colon:
            self.advance()
        segments = [self._parse_segment()]
        while self.at("::"):
            self.advance()
            if self.at("<"):
                segments[-1] = replace(segments[-1], args=self._parse_generic_args())
                continue
            segments.append(self._parse_segment())
        return TypePath(tuple(segments), leading_colon=leading_colon)

    def _parse_segment(self) -> PathSegment:
        tok = self.expect_ident("a path segment")
        if tok.value in RUST_KEYWORDS and tok.value not in PATH_KEYWORDS:
            raise self.error(f"Keyword {tok.value!r} cannot start a type", tok)
        args: tuple[GenericArg, ...] = ()
        if self.at("<"):
            args = self._parse_generic_args()
        return PathSegment(tok.value, args)

    def _parse_generic_args(self) -> tuple[GenericArg, ...]:
        self.expect("<")
        args: list[GenericArg] = []
        while not self.at(">"):
            tok = self.peek()
            if tok.kind == "lifetime":
                args.append(Lifetime(self.advance().value))
            elif tok.kind == "literal":
                args.append(ConstArg(self.advance().value))
            else:
                args.append(self.parse_type())
            if not self.at(","):
                break
            self.advance()
        self.expect(">")
        return tuple(args)


def parse_call_source(content: str) -> EnumDeclaration:
    """Parse the text of exactly one enum declaration.

    Raises:
        ExpandError: MALFORMED_SOURCE, with the line and column of the
            offending token.
    """
    return _CallParser(content).parse_declaration()


def parse_type(content: str) -> TypeExpr:
    parser = _CallParser(content)
    ty = parser.parse_type()
    parser.expect_end()
    return ty


def parse_attribute(content: str) -> Attribute:
    """Parse one attribute written as `#[...]`, `/// ...` or bare `meta`."""
    text = content.strip()
    if not text.startswith(("#", "///", "/**")):
        text = f"#[{text}]"
    parser = _CallParser(text)
    attributes = parser.parse_attributes()
    if len(attributes) != 1:
        raise parser.error("Expected exactly one attribute")
    parser.expect_end()
    return attributes[0]


# ===--- Printer ---=== #


def format_type(ty: GenericArg) -> str:
    """Render a type expression in canonical form.

    The rendering is whitespace independent, so it doubles as the
    deduplication key for context-bound types.
    """
    if isinstance(ty, TypePath):
        prefix = "::" if ty.leading_colon else ""
        if ty.qself is not None:
            qualified = format_type(ty.qself.ty)
            if ty.qself.trait_path is not None:
                qualified += f" as {format_type(ty.qself.trait_path)}"
            prefix = f"<{qualified}>::"
        segments = []
        for segment in ty.segments:
            if segment.args:
                args = ", ".join(format_type(arg) for arg in segment.args)
                segments.append(f"{segment.name}<{args}>")
            else:
                segments.append(segment.name)
        return prefix + "::".join(segments)
    if isinstance(ty, TupleType):
        elems = ", ".join(format_type(elem) for elem in ty.elems)
        return f"({elems},)" if len(ty.elems) == 1 else f"({elems})"
    if isinstance(ty, ReferenceType):
        lifetime = f"{ty.lifetime} " if ty.lifetime else ""
        mutable = "mut " if ty.mutable else ""
        return f"&{lifetime}{mutable}{format_type(ty.inner)}"
    if isinstance(ty, ArrayType):
        if ty.length is None:
            return f"[{format_type(ty.elem)}]"
        return f"[{format_type(ty.elem)}; {ty.length}]"
    if isinstance(ty, PointerType):
        return f"*{'mut' if ty.mutable else 'const'} {format_type(ty.inner)}"
    if isinstance(ty, FnPointerType):
        params = ", ".join(format_type(p) for p in ty.params)
        output = f" -> {format_type(ty.output)}" if ty.output is not None else ""
        return f"fn({params}){output}"
    if isinstance(ty, TraitObjectType):
        return f"{ty.keyword} " + " + ".join(format_type(b) for b in ty.bounds)
    if isinstance(ty, Lifetime):
        return ty.name
    if isinstance(ty, ConstArg):
        return ty.value
    raise TypeError(f"Not a type expression: {ty!r}")


def format_attribute(attribute: Attribute, inline: bool = False) -> str:
    if attribute.comment is not None and not inline:
        if attribute.block:
            return f"/**{attribute.comment}*/"
        return f"///{attribute.comment}"
    return f"#[{attribute.meta}]"


# ===--- Generic extraction ---=== #


class GenericTable:
    """Insertion-ordered mapping of canonical type text to generic name."""

    def __init__(self):
        self._bindings: dict[str, str] = {}
        self._owners: dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._bindings)

    def __contains__(self, key: str) -> bool:
        return key in self._bindings

    def __getitem__(self, key: str) -> str:
        return self._bindings[key]

    def items(self) -> list[tuple[str, str]]:
        return list(self._bindings.items())

    def generics(self) -> tuple[str, ...]:
        return tuple(self._bindings.values())

    def bind(
        self,
        ty: TypePath,
        naming_rule: Callable[[TypePath], str],
        position: SourcePosition | None = None,
    ) -> str:
        key = format_type(ty)
        existing = self._bindings.get(key)
        if existing is not None:
            return existing
        name = validate_identifier(naming_rule(ty), "generic parameter name", position)
        owner = self._owners.get(name)
        if owner is not None:
            raise ExpandError(
                "NAMING_COLLISION",
                f"Generic name {name!r} is assigned to both {owner!r} and {key!r}",
                "Provide a generic naming rule that keeps distinct types apart.",
                position,
            )
        self._bindings[key] = name
        self._owners[name] = key
        return name


@dataclass(frozen=True)
class ExtractionResult:
    """Output of extract_generics.

    Attributes:
        table: Generic table filled in first-seen order.
        variants: Non-sentinel variants with context-bound types rewritten,
            in declaration order.
        source_indices: Position in the source declaration of each entry of
            `variants`.
    """

    table: GenericTable
    variants: tuple[Variant, ...]
    source_indices: tuple[int, ...]


def is_sentinel_variant(variant: Variant) -> bool:
    return variant.name.lower() == SENTINEL_VARIANT.lower()


def default_generic_name(ty: TypePath) -> str:
    return ty.last_name


def is_context_bound(ty: GenericArg, context: str | None) -> bool:
    """True for `T::Assoc`, bare `T`, and any `<Q as Trait>::Assoc` whose `Q`
    mentions `T` (`<T as Config>::Balance`, `<T::Lookup as StaticLookup>::Source`).

    A qualified projection is bound as a whole, never rewritten inside.
    """
    if context is None or not isinstance(ty, TypePath):
        return False
    if ty.qself is not None:
        return references_context(ty.qself.ty, context)
    return not ty.leading_colon and ty.segments[0].name == context


def references_context(ty: GenericArg, context: str | None) -> bool:
    if is_context_bound(ty, context):
        return True
    return any(references_context(child, context) for child in _child_types(ty))


def _child_types(ty: GenericArg) -> tuple[GenericArg, ...]:
    if isinstance(ty, TypePath):
        children: list[GenericArg] = []
        if ty.qself is not None:
            children.append(ty.qself.ty)
            if ty.qself.trait_path is not None:
                children.append(ty.qself.trait_path)
        for segment in ty.segments:
            children.extend(segment.args)
        return tuple(children)
    if isinstance(ty, TupleType):
        return ty.elems
    if isinstance(ty, (ReferenceType, PointerType)):
        return (ty.inner,)
    if isinstance(ty, ArrayType):
        return (ty.elem,)
    if isinstance(ty, FnPointerType):
        return ty.params + ((ty.output,) if ty.output is not None else ())
    if isinstance(ty, TraitObjectType):
        return ty.bounds
    return ()


def _rewrite_type(
    ty: GenericArg,
    context: str | None,
    table: GenericTable,
    naming_rule: Callable[[TypePath], str],
    position: SourcePosition,
) -> GenericArg:
    def rewrite(child):
        return _rewrite_type(child, context, table, naming_rule, position)

    if isinstance(ty, TypePath):
        if is_context_bound(ty, context):
            return single_segment_path(table.bind(ty, naming_rule, position))
        qself = ty.qself
        if qself is not None:
            trait_path = rewrite(qself.trait_path) if qself.trait_path else None
            qself = QualifiedSelf(rewrite(qself.ty), trait_path)
        segments = tuple(
            replace(segment, args=tuple(rewrite(arg) for arg in segment.args))
            for segment in ty.segments
        )
        return replace(ty, segments=segments, qself=qself)
    if isinstance(ty, TupleType):
        return TupleType(tuple(rewrite(elem) for elem in ty.elems))
    if isinstance(ty, (ReferenceType, PointerType)):
        return replace(ty, inner=rewrite(ty.inner))
    if isinstance(ty, ArrayType):
        return replace(ty, elem=rewrite(ty.elem))
    if isinstance(ty, FnPointerType):
        output = rewrite(ty.output) if ty.output is not None else None
        return FnPointerType(tuple(rewrite(p) for p in ty.params), output)
    if isinstance(ty, TraitObjectType):
        return replace(ty, bounds=tuple(rewrite(b) for b in ty.bounds))
    return ty


def validate_field_shape(variant: Variant, index: int, field_: Field) -> None:
    if isinstance(field_.ty, TypePath):
        return
    raise ExpandError(
        "UNSUPPORTED_FIELD_TYPE",
        f"Field {index} of variant {variant.name!r} has unsupported type "
        f"{format_type(field_.ty)!r}; only path types are supported",
        "Call parameters must be plain type paths such as T::Balance or u32.",
        SourcePosition(field_.line, field_.column, variant.name, index),
    )


def extract_generics(declaration: EnumDeclaration, config: CallConfig) -> ExtractionResult:
    """Replace context-bound field types with shared generic parameters.

    Sentinel variants are filtered wherever they occur and their fields are
    neither validated nor scanned. The declaration itself is not modified.

    Raises:
        ExpandError: UNSUPPORTED_FIELD_TYPE, INVALID_IDENTIFIER or
            NAMING_COLLISION.
    """
    context = declaration.context_param
    naming_rule = config.generic_name_rule or default_generic_name
    table = GenericTable()
    variants: list[Variant] = []
    indices: list[int] = []
    for variant_index, variant in enumerate(declaration.variants):
        if is_sentinel_variant(variant):
            continue
        fields: list[Field] = []
        for index, field_ in enumerate(variant.fields):
            validate_field_shape(variant, index, field_)
            position = SourcePosition(field_.line, field_.column, variant.name, index)
            ty = _rewrite_type(field_.ty, context, table, naming_rule, position)
            fields.append(replace(field_, ty=ty))
        variants.append(replace(variant, fields=tuple(fields)))
        indices.append(variant_index)
    return ExtractionResult(table, tuple(variants), tuple(indices))


# ===--- Variant transformation ---=== #


@dataclass(frozen=True)
class OutputField:
    ty: TypeExpr
    attributes: tuple[Attribute, ...] = ()
    name: str | None = None


@dataclass(frozen=True)
class OutputVariant:
    name: str
    fields: tuple[OutputField, ...] = ()
    attributes: tuple[Attribute, ...] = ()


def filter_attributes(
    attributes: tuple[Attribute, ...], keep_comments: bool
) -> tuple[Attribute, ...]:
    if keep_comments:
        return attributes
    return tuple(attr for attr in attributes if not attr.is_doc)


def _codec_options(attributes: tuple[Attribute, ...]) -> list[str]:
    options: list[str] = []
    for attr in attributes:
        if attr.path != CODEC_HELPER_ATTRIBUTE:
            continue
        match = re.fullmatch(r"[^(]*\((.*)\)", attr.meta, re.DOTALL)
        if match:
            options.extend(opt.strip() for opt in match.group(1).split(","))
    return options


def is_codec_skipped(attributes: tuple[Attribute, ...]) -> bool:
    return "skip" in _codec_options(attributes)


def explicit_codec_index(attributes: tuple[Attribute, ...]) -> int | None:
    for option in _codec_options(attributes):
        match = re.fullmatch(r"index\s*=\s*(\d+)", option)
        if match:
            return int(match.group(1))
    return None


def dispatch_index_overrides(declaration: EnumDeclaration) -> dict[int, int]:
    """Explicit codec indices needed to keep dispatch indices stable.

    Variants without `#[codec(index = N)]` are encoded with their position
    among the variants not marked `#[codec(skip)]`. Dropping a sentinel that is
    not skipped shifts every later position, so those variants are pinned to
    their source index. Keys are source positions.
    """
    overrides: dict[int, int] = {}
    original = 0
    emitted = 0
    for position, variant in enumerate(declaration.variants):
        if is_codec_skipped(variant.attributes):
            continue
        if is_sentinel_variant(variant):
            original += 1
            continue
        if explicit_codec_index(variant.attributes) is None and original != emitted:
            overrides[position] = original
        original += 1
        emitted += 1
    return overrides


def _field_label(ty: TypeExpr) -> str:
    if isinstance(ty, TypePath):
        return ty.last_name.removeprefix("r#")
    return "field"


def _name_fields(
    fields: list[OutputField], style: FieldStyle, variant: str
) -> list[OutputField]:
    rule = style.naming_rule or to_snake_case
    used: dict[str, int] = {}
    named: list[OutputField] = []
    for index, field_ in enumerate(fields):
        base = rule(_field_label(field_.ty))
        validate_identifier(
            base, "field name", SourcePosition(variant=variant, field_index=index)
        )
        count = used.get(base, 0)
        used[base] = count + 1
        name = base if count == 0 else f"{base}_{count}"
        named.append(replace(field_, name=name))
    return named


def transform_variants(
    declaration: EnumDeclaration, extraction: ExtractionResult, config: CallConfig
) -> tuple[OutputVariant, ...]:
    """Rename variants, filter attributes and rebuild field lists.

    Raises:
        ExpandError: INVALID_IDENTIFIER for a renamed variant that is not an
            identifier, NAMING_COLLISION when two variants map to one name.
    """
    rename = config.variant_name_rule or to_pascal_case
    overrides = dispatch_index_overrides(declaration)
    seen: dict[str, str] = {}
    output: list[OutputVariant] = []
    for source_index, variant in zip(extraction.source_indices, extraction.variants):
        position = SourcePosition(variant.line, None, variant.name)
        name = validate_identifier(rename(variant.name), "variant name", position)
        if name in seen:
            raise ExpandError(
                "NAMING_COLLISION",
                f"Variants {seen[name]!r} and {variant.name!r} both map to {name!r}",
                "Provide a variant naming rule that keeps variant names distinct.",
                position,
            )
        seen[name] = variant.name

        attributes = filter_attributes(variant.attributes, config.keep_comments)
        if source_index in overrides:
            index_meta = f"{CODEC_HELPER_ATTRIBUTE}(index = {overrides[source_index]})"
            attributes += (Attribute(CODEC_HELPER_ATTRIBUTE, index_meta),)

        fields = [
            OutputField(f.ty, filter_attributes(f.attributes, config.keep_comments))
            for f in variant.fields
        ]
        if config.field_style.named:
            fields = _name_fields(fields, config.field_style, variant.name)
        output.append(OutputVariant(name, tuple(fields), attributes))
    return tuple(output)


# ===--- Declaration emitter ---=== #


@dataclass(frozen=True)
class OutputDeclaration:
    name: str
    generics: tuple[str, ...]
    derives: tuple[str, ...]
    attributes: tuple[Attribute, ...]
    variants: tuple[OutputVariant, ...]
    visibility: str = ""


def build_derives(config: CallConfig) -> tuple[str, ...]:
    """Baseline derives, then the debug derive, then configured extras."""
    namespace = validate_path(config.serialization_namespace, "serialization namespace")
    derives = list(BASELINE_DERIVES)
    derives.append(f"{namespace}::Encode")
    derives.append(f"{namespace}::Decode")
    if config.debug_trait_source is not None:
        source = validate_path(config.debug_trait_source, "debug trait source")
        derives.append(f"{source}::{DEBUG_TRAIT_NAME}")
    for derive in config.extra_derives:
        derives.append(validate_path(derive, "derive"))
    return tuple(derives)


def emit_declaration(
    declaration: EnumDeclaration,
    extraction: ExtractionResult,
    variants: tuple[OutputVariant, ...],
    config: CallConfig,
) -> OutputDeclaration:
    target_name = DEFAULT_TARGET_NAME if config.target_name is None else config.target_name
    name = validate_identifier(target_name, "target name")
    derives = build_derives(config)
    # The source derive list is replaced by the emitted one.
    attributes = tuple(
        attr
        for attr in filter_attributes(declaration.attributes, config.keep_comments)
        if attr.path != "derive"
    )
    attributes += tuple(parse_attribute(text) for text in config.extra_attributes)
    return OutputDeclaration(
        name=name,
        generics=extraction.table.generics(),
        derives=derives,
        attributes=attributes,
        variants=variants,
        visibility=declaration.visibility,
    )


# ===--- Pass entry points ---=== #


def expand_call(
    declaration: EnumDeclaration, config: CallConfig | None = None
) -> OutputDeclaration:
    """Run the rewrite pass. Either returns the full output or raises."""
    config = config or CallConfig()
    extraction = extract_generics(declaration, config)
    variants = transform_variants(declaration, extraction, config)
    return emit_declaration(declaration, extraction, variants, config)


@dataclass(frozen=True)
class ParsedCall:
    config: CallConfig
    declaration: EnumDeclaration

    def expand(self) -> OutputDeclaration:
        return expand_call(self.declaration, self.config)

    def render(self) -> str:
        return render_declaration(self.expand())


def expand_source(content: str, config: CallConfig | None = None) -> str:
    return render_declaration(expand_call(parse_call_source(content), config))


# ===--- Declaration rendering ---=== #


def format_variant(variant: OutputVariant) -> str:
    if not variant.fields:
        return variant.name
    parts: list[str] = []
    for field_ in variant.fields:
        attrs = "".join(f"{format_attribute(a, inline=True)} " for a in field_.attributes)
        if field_.name is not None:
            parts.append(f"{attrs}{field_.name}: {format_type(field_.ty)}")
        else:
            parts.append(f"{attrs}{format_type(field_.ty)}")
    if variant.fields[0].name is not None:
        return f"{variant.name} {{ {', '.join(parts)} }}"
    return f"{variant.name}({', '.join(parts)})"


def format_declaration(output: OutputDeclaration) -> list[str]:
    """Return source lines for an output declaration.

    Layout:
        #[derive(...)]                  <- omitted when derives is empty
        <declaration attributes>        <- one per line
        <vis> enum <Name><<Generics>> {  <- no angle brackets without generics
            <variant attributes>
            <Variant>(<fields>),
        }

    Returns:
        Lines without trailing newlines.
    """
    lines: list[str] = []
    if output.derives:
        lines.append(f"#[derive({', '.join(output.derives)})]")
    lines.extend(format_attribute(attr) for attr in output.attributes)

    visibility = f"{output.visibility} " if output.visibility else ""
    generics = f"<{', '.join(output.generics)}>" if output.generics else ""
    header = f"{visibility}enum {output.name}{generics}"
    if not output.variants:
        lines.append(f"{header} {{}}")
        return lines

    lines.append(f"{header} {{")
    for variant in output.variants:
        lines.extend(f"    {format_attribute(attr)}" for attr in variant.attributes)
        lines.append(f"    {format_variant(variant)},")
    lines.append("}")
    return lines


def render_declaration(output: OutputDeclaration) -> str:
    return "\n".join(format_declaration(output)) + "\n"


# ===--- Diagnostics ---=== #


@dataclass(frozen=True)
class ExpansionSummary:
    source_name: str
    target_name: str
    context_param: str | None
    source_variants: int
    dropped_sentinels: int
    emitted_variants: int
    bound_fields: int
    generics: tuple[str, ...]


def build_expansion_summary(
    declaration: EnumDeclaration, output: OutputDeclaration
) -> ExpansionSummary:
    context = declaration.context_param
    kept = [v for v in declaration.variants if not is_sentinel_variant(v)]
    bound_fields = sum(
        1 for v in kept for f in v.fields if references_context(f.ty, context)
    )
    return ExpansionSummary(
        source_name=declaration.name,
        target_name=output.name,
        context_param=context,
        source_variants=len(declaration.variants),
        dropped_sentinels=len(declaration.variants) - len(kept),
        emitted_variants=len(output.variants),
        bound_fields=bound_fields,
        generics=output.generics,
    )


def format_expansion_summary(summary: ExpansionSummary) -> str:
    """Render an ExpansionSummary as a console block with a trailing newline."""
    source = summary.source_name
    if summary.context_param:
        source += f"<{summary.context_param}>"
    target = summary.target_name
    if summary.generics:
        target += f"<{', '.join(summary.generics)}>"

    lines: list[str] = []
    lines.append(f"Call expansion: {source} -> {target}")
    lines.append("")
    lines.append(
        f"  Variants:   {summary.source_variants} source, "
        f"{summary.dropped_sentinels} sentinel dropped, "
        f"{summary.emitted_variants} emitted"
    )
    lines.append(f"  Fields:     {summary.bound_fields} context-bound")
    generics = ", ".join(summary.generics) if summary.generics else "none"
    lines.append(f"  Generics:   {generics}")
    lines.append("")
    return "\n".join(lines)


def print_expansion_summary(summary: ExpansionSummary) -> None:
    print(format_expansion_summary(summary), end="")


def format_expand_error(err: ExpandError) -> str:
    lines = [f"Expand error [{err.code}]: {err.message}"]
    if err.position is not None and str(err.position):
        lines.append(f"  at {err.position}")
    if err.suggestion:
        lines.append(f"Hint: {err.suggestion}")
    return "\n".join(lines)
