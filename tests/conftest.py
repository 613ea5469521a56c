import pathlib
import sys

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
SCRIPTS_ROOT = PROJECT_ROOT / "scripts"
if str(SCRIPTS_ROOT) not in sys.path:
    sys.path.insert(0, str(SCRIPTS_ROOT))


CORE_RS = """\
pub trait FloatCore {
    fn nan() -> Self;
    //
    // unary functions
    //
    // sin
    fn sin(&self) -> Self;
}
"""

AZ_FLOAT_RS = """\
macro_rules! impl_az_float_core { ($F:ty) => {
    impl FloatCore for AzFloat<$F> {
        fn nan() -> Self { Self( <$F>::NAN ) }
        // unary functions
        fn sin(&self) -> Self { Self( self.0.sin() ) }

        fn minus(&self) -> Self { Self( - self.0 ) }
    }
} }
"""

NUM_VEC_RS = """\
impl<S : FloatCore> FloatCore for NumVec<S> {
    // unary functions
    impl_unary_float_core!(sin);
}
"""

AD_FLOAT_CORE_RS = """\
impl<V : FloatCore> FloatCore for AD<V> {
    // unary functions
    impl_unary_float_core!(sin);
}
"""

ID_RS = """\
set_operator_ids!(
    // Unary Operators
    /// sin
    SIN_OP,
    //
    // CALL
    /// callback to an atomic function
    CALL_OP,
);
"""

SIN_RS = """\
//! Evaluate the sin operator
//!
//! Uses the basin of sines for testing.
use crate::op::id::SIN_OP;
// -------------------------------------------------------------------------
unary::forward_dyp!(sin);
unary::rust_src!(sin);
/// Set the operator information for all the SIN_OP operator.
pub fn set_op_info<V>( op_info_vec : &mut [OpInfo<V>] )
where
    V : Clone + FloatCore ,
{
    op_info_vec[SIN_OP as usize] = OpInfo{
        name              : "sin",
        forward_dyp_value : sin_forward_dyp::<V, V>,
        forward_der_value : panic_der::<V, V>,
        rust_src          : sin_rust_src,
    };
}
"""

COS_RS = """\
//! Evaluate the cos operator
//!
//! Uses the basin of sines for testing.
use crate::op::id::COS_OP;
// -------------------------------------------------------------------------
unary::forward_dyp!(cos);
unary::rust_src!(cos);
/// Set the operator information for all the COS_OP operator.
pub fn set_op_info<V>( op_info_vec : &mut [OpInfo<V>] )
where
    V : Clone + FloatCore ,
{
    op_info_vec[COS_OP as usize] = OpInfo{
        name              : "cos",
        forward_dyp_value : cos_forward_dyp::<V, V>,
        forward_der_value : panic_der::<V, V>,
        rust_src          : cos_rust_src,
    };
}
"""

CRATE_FILES = {
    "Cargo.toml": '[package]\nname = "rustad"\n',
    "src/float/core.rs": CORE_RS,
    "src/float/az_float.rs": AZ_FLOAT_RS,
    "src/float/num_vec.rs": NUM_VEC_RS,
    "src/ad/float_core.rs": AD_FLOAT_CORE_RS,
    "src/op/id.rs": ID_RS,
    "src/op/sin.rs": SIN_RS,
}


def snapshot(root: pathlib.Path) -> dict:
    return {
        str(path.relative_to(root)): path.read_bytes()
        for path in sorted(root.rglob("*"))
        if path.is_file() and ".git" not in path.parts
    }


@pytest.fixture
def crate(tmp_path: pathlib.Path) -> pathlib.Path:
    root = tmp_path / "rustad"
    for rel_path, text in CRATE_FILES.items():
        path = root / rel_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text)
    return root
