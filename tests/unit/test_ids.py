import pytest

from kirapilot.ids import id_kind, new_id


def test_new_id_shape() -> None:
    value = new_id("chain")
    prefix, _, rest = value.partition("_")
    assert prefix == "chain"
    assert len(rest) == 32
    assert new_id("chain") != value


def test_new_id_rejects_unknown_prefix() -> None:
    with pytest.raises(ValueError, match="unknown id prefix: usr"):
        new_id("usr")


@pytest.mark.parametrize(
    ("value", "kind"),
    [
        (new_id("ses"), "timer session"),
        (new_id("tex"), "tool execution row"),
        ("log_missing", None),
        ("plain", None),
        ("usr_" + "a" * 32, None),
    ],
)
def test_id_kind(value, kind) -> None:
    assert id_kind(value) == kind
