from __future__ import annotations

from collections.abc import Callable

import pytest

import call_expand
from call_expand import (
    Attribute,
    CallConfig,
    EnumDeclaration,
    ExpandError,
    OutputDeclaration,
    OutputField,
    OutputVariant,
    build_derives,
    expand_call,
    format_declaration,
    parse_type,
    render_declaration,
)

MakeDeclaration = Callable[..., EnumDeclaration]

BASELINE = ("PartialEq", "Eq", "Clone", "codec::Encode", "codec::Decode")


def test_baseline_derives() -> None:
    assert build_derives(CallConfig()) == BASELINE


def test_derive_order_is_baseline_then_debug_then_extras() -> None:
    config = (
        CallConfig()
        .with_serialization_namespace("parity_scale_codec")
        .push_derive("scale_info::TypeInfo")
        .with_debug_trait_source("sp_runtime")
        .push_derive("serde::Serialize")
    )

    assert build_derives(config) == (
        "PartialEq",
        "Eq",
        "Clone",
        "parity_scale_codec::Encode",
        "parity_scale_codec::Decode",
        "sp_runtime::RuntimeDebug",
        "scale_info::TypeInfo",
        "serde::Serialize",
    )


def test_derive_paths_accept_leading_colons_and_path_keywords() -> None:
    config = (
        CallConfig()
        .with_serialization_namespace("::codec")
        .push_derive("crate::MyTrait")
    )

    assert build_derives(config)[3:] == ("::codec::Encode", "::codec::Decode", "crate::MyTrait")


@pytest.mark.parametrize(
    "config",
    [
        CallConfig().with_serialization_namespace("codec crate"),
        CallConfig().with_serialization_namespace(""),
        CallConfig().with_debug_trait_source("sp-runtime"),
        CallConfig().push_derive("Type Info"),
        CallConfig().push_derive("scale_info::"),
        CallConfig().push_derive("fn"),
    ],
)
def test_invalid_derive_paths_are_reported(config: CallConfig) -> None:
    with pytest.raises(ExpandError) as exc_info:
        build_derives(config)

    assert exc_info.value.code == "INVALID_IDENTIFIER"


def test_default_target_name_is_call(make_declaration: MakeDeclaration) -> None:
    output = expand_call(make_declaration("remark(Vec<u8>),", header="enum Dispatch<T: Config>"))

    assert output.name == "Call"


def test_configured_target_name(make_declaration: MakeDeclaration) -> None:
    output = expand_call(
        make_declaration("remark(Vec<u8>),"), CallConfig().with_name("BalancesCall")
    )

    assert output.name == "BalancesCall"


@pytest.mark.parametrize("name", ["1Call", "Balances Call", "enum", "Call<T>", "_", ""])
def test_invalid_target_name_is_reported(
    make_declaration: MakeDeclaration, name: str
) -> None:
    with pytest.raises(ExpandError) as exc_info:
        expand_call(make_declaration("remark(Vec<u8>),"), CallConfig().with_name(name))

    assert exc_info.value.code == "INVALID_IDENTIFIER"
    assert "target name" in exc_info.value.message


def test_raw_identifier_target_name_is_allowed(make_declaration: MakeDeclaration) -> None:
    output = expand_call(make_declaration("remark(Vec<u8>),"), CallConfig().with_name("r#enum"))

    assert output.name == "r#enum"


def test_declaration_attributes_drop_derive_and_docs(
    make_declaration: MakeDeclaration,
) -> None:
    header = (
        "/// The call enum.\n"
        "#[derive(Encode, Decode)]\n"
        "#[scale_info(skip_type_params(T))]\n"
        "pub enum Call<T: Config>"
    )

    output = expand_call(make_declaration("remark(Vec<u8>),", header=header))

    assert output.attributes == (
        Attribute("scale_info", "scale_info(skip_type_params(T))"),
    )


def test_extra_attributes_are_appended_after_source_attributes(
    make_declaration: MakeDeclaration,
) -> None:
    header = "#[scale_info(skip_type_params(T))]\npub enum Call<T: Config>"
    config = (
        CallConfig()
        .push_attribute('#[cfg_attr(feature = "std", derive(Debug))]')
        .push_attribute("allow(clippy::large_enum_variant)")
    )

    output = expand_call(make_declaration("remark(Vec<u8>),", header=header), config)

    assert [a.meta for a in output.attributes] == [
        "scale_info(skip_type_params(T))",
        'cfg_attr(feature = "std", derive(Debug))',
        "allow(clippy::large_enum_variant)",
    ]


def test_malformed_extra_attribute_fails_the_pass(
    make_declaration: MakeDeclaration,
) -> None:
    config = CallConfig().push_attribute("#[unterminated(")

    with pytest.raises(ExpandError) as exc_info:
        expand_call(make_declaration("remark(Vec<u8>),"), config)

    assert exc_info.value.code == "MALFORMED_SOURCE"


def test_kept_declaration_docs_stay_in_place(make_declaration: MakeDeclaration) -> None:
    header = "/// The call enum.\n#[derive(Encode)]\npub enum Call<T: Config>"

    output = expand_call(
        make_declaration("remark(Vec<u8>),", header=header), CallConfig().with_comments()
    )

    assert [a.path for a in output.attributes] == ["doc"]
    assert output.attributes[0].comment == " The call enum."


def test_visibility_is_carried_over(make_declaration: MakeDeclaration) -> None:
    output = expand_call(
        make_declaration("remark(Vec<u8>),", header="pub(crate) enum Call<T: Config>")
    )

    assert output.visibility == "pub(crate)"


def _output(**overrides: object) -> OutputDeclaration:
    base: dict[str, object] = {
        "name": "Call",
        "generics": (),
        "derives": (),
        "attributes": (),
        "variants": (),
        "visibility": "pub",
    }
    base.update(overrides)
    return OutputDeclaration(**base)


def test_format_declaration_without_generics_or_variants() -> None:
    assert format_declaration(_output()) == ["pub enum Call {}"]


def test_format_declaration_full_layout() -> None:
    output = _output(
        generics=("AccountId", "Balance"),
        derives=BASELINE,
        attributes=(Attribute("non_exhaustive", "non_exhaustive"),),
        variants=(
            OutputVariant(
                "Transfer",
                (
                    OutputField(parse_type("AccountId")),
                    OutputField(
                        parse_type("Balance"), (Attribute("codec", "codec(compact)"),)
                    ),
                ),
                (Attribute("codec", "codec(index = 0)"),),
            ),
            OutputVariant("Noop"),
        ),
    )

    assert format_declaration(output) == [
        "#[derive(PartialEq, Eq, Clone, codec::Encode, codec::Decode)]",
        "#[non_exhaustive]",
        "pub enum Call<AccountId, Balance> {",
        "    #[codec(index = 0)]",
        "    Transfer(AccountId, #[codec(compact)] Balance),",
        "    Noop,",
        "}",
    ]


def test_format_named_variant() -> None:
    variant = OutputVariant(
        "Transfer",
        (
            OutputField(parse_type("AccountId"), name="account_id"),
            OutputField(parse_type("Balance"), (Attribute("codec", "codec(compact)"),), "balance"),
        ),
    )

    assert call_expand.format_variant(variant) == (
        "Transfer { account_id: AccountId, #[codec(compact)] balance: Balance }"
    )


def test_doc_comments_render_as_comments_on_lines_and_inline_as_attributes() -> None:
    doc = Attribute.from_doc_comment(" Docs")

    assert call_expand.format_attribute(doc) == "/// Docs"
    assert call_expand.format_attribute(doc, inline=True) == '#[doc = " Docs"]'


def test_render_declaration_ends_with_single_newline() -> None:
    text = render_declaration(_output(visibility=""))

    assert text == "enum Call {}\n"
