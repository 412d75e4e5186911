import pytest

from dosync.errors import InvalidPolicy
from dosync.versions import parse_constraint, parse_version


def test_lenient_parsing():
    assert str(parse_version("v2")) == "2.0.0"
    assert str(parse_version("1.4")) == "1.4.0"
    v = parse_version("1.2.3-rc.1+build.5")
    assert v.prerelease == "rc.1"
    assert v.build == "build.5"
    assert parse_version("latest") is None
    assert parse_version("1.2.3.4") is None


def allows(rng, version):
    return parse_constraint(rng).allows(parse_version(version))


@pytest.mark.parametrize(
    "rng, version, expected",
    [
        (">=1.2.0 <2.0.0", "1.9.9", True),
        (">=1.2.0 <2.0.0", "2.0.0", False),
        (">=1.2.0, <2.0.0", "1.1.0", False),
        ("^1.2.3", "1.9.0", True),
        ("^1.2.3", "2.0.0", False),
        ("^0.2.3", "0.2.9", True),
        ("^0.2.3", "0.3.0", False),
        ("~1.2.3", "1.2.9", True),
        ("~1.2.3", "1.3.0", False),
        ("~1", "1.9.0", True),
        ("1.2.x", "1.2.7", True),
        ("1.2.x", "1.3.0", False),
        ("*", "3.4.5", True),
        ("1.2 - 1.4.5", "1.4.5", True),
        ("1.2 - 1.4.5", "1.4.6", False),
        ("<1.0.0 || >=3.0.0", "0.9.0", True),
        ("<1.0.0 || >=3.0.0", "2.0.0", False),
        ("!=1.2.3", "1.2.3", False),
        (">1.2", "1.2.9", False),
        (">1.2", "1.3.0", True),
        ("<=1.2", "1.2.9", True),
    ],
)
def test_constraints(rng, version, expected):
    assert allows(rng, version) is expected


def test_prerelease_only_matches_prerelease_terms():
    assert not allows(">=1.0.0", "2.0.0-rc1")
    assert allows(">=2.0.0-rc0", "2.0.0-rc1")


def test_build_metadata_has_no_precedence():
    assert allows("=1.2.3", "1.2.3+abc")


@pytest.mark.parametrize("rng", ["", "   ", ">>1", "1.2.3 ||", "abc"])
def test_invalid_constraints(rng):
    with pytest.raises(InvalidPolicy):
        parse_constraint(rng)
