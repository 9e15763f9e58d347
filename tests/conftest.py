import sys
from collections.abc import Callable
from pathlib import Path

import pytest

PROJECT_DIR = Path(__file__).resolve().parent.parent
if str(PROJECT_DIR) not in sys.path:
    sys.path.insert(0, str(PROJECT_DIR))

import call_expand  # noqa: E402


BALANCES_CALL = """\
/// Contains one variant per dispatchable call.
#[derive(Encode, Decode)]
#[scale_info(skip_type_params(T))]
pub enum Call<T: Config<I>, I: 'static = ()> where T: Clone {
    #[doc(hidden)]
    #[codec(skip)]
    __Ignore(PhantomData<(T, I)>, Never),
    /// Transfer some liquid free balance to another account.
    #[codec(index = 0)]
    transfer(<T::Lookup as StaticLookup>::Source, #[codec(compact)] T::Balance),
    #[codec(index = 1)]
    set_balance(
        <T::Lookup as StaticLookup>::Source,
        #[codec(compact)] T::Balance,
        #[codec(compact)] T::Balance,
    ),
    #[codec(index = 2)]
    force_transfer(
        <T::Lookup as StaticLookup>::Source,
        <T::Lookup as StaticLookup>::Source,
        #[codec(compact)] T::Balance,
    ),
}
"""


@pytest.fixture
def balances_source() -> str:
    return BALANCES_CALL


@pytest.fixture
def make_declaration() -> Callable[..., call_expand.EnumDeclaration]:
    def _make_declaration(
        body: str, header: str = "pub enum Call<T: Config>"
    ) -> call_expand.EnumDeclaration:
        return call_expand.parse_call_source(f"{header} {{\n{body}\n}}\n")

    return _make_declaration


@pytest.fixture
def expand_body() -> Callable[..., str]:
    def _expand_body(
        body: str,
        config: call_expand.CallConfig | None = None,
        header: str = "pub enum Call<T: Config>",
    ) -> str:
        return call_expand.expand_source(f"{header} {{\n{body}\n}}\n", config)

    return _expand_body
