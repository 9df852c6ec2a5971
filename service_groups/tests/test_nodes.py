"""
Unit tests for the permission node model.
"""

import pytest
from unittest.mock import patch

from service_groups.app.nodes.models import (
    DEFAULT_GROUP, GroupNode, Node, NodeKind, PrefixNode, WeightNode, decode_key,
)

NOW = "service_groups.app.nodes.models.now_millis"


class TestNode:
    """Test cases for Node."""

    def test_defaults(self):
        """Test a bare node is true, permanent and generic."""
        node = Node("chat.color")

        assert node.value is True
        assert node.expires_at == 0
        assert node.kind is NodeKind.GENERIC
        assert node.payload is None
        assert node.is_expired() is False
        assert node.time_remaining() == 0

    def test_expiration(self):
        """Test expiration is relative to the current time."""
        with patch(NOW, return_value=10_000):
            assert Node("fly", True, 9_999).is_expired() is True
            assert Node("fly", True, 10_500).is_expired() is False
            assert Node("fly", True, 10_500).time_remaining() == 500
            assert Node("fly", True, 9_000).time_remaining() == -1_000

    def test_with_duration(self):
        """Test durations set an absolute expiration."""
        with patch(NOW, return_value=10_000):
            assert Node("fly").with_duration(500).expires_at == 10_500
            assert Node("fly", True, 123).with_duration(0).expires_at == 0

    def test_structural_equality(self):
        """Test equality covers key, value and expiration only."""
        assert Node("a.b", True, 5) == Node("a.b", True, 5)
        assert Node("a.b", True, 5) != Node("a.b", False, 5)
        assert Node("a.b", True, 5) != Node("a.b", True, 6)

    def test_value_mutates_in_place(self):
        """Test value and expiration can change without re-decoding."""
        node = Node("weight.4")
        node.value = False
        node.expires_at = 99

        assert node.kind is NodeKind.WEIGHT
        assert node == Node("weight.4", False, 99)

    def test_empty_key_rejected(self):
        """Test empty keys are invalid."""
        with pytest.raises(ValueError):
            Node("")


class TestNodeVariants:
    """Test cases for the encoded node kinds."""

    def test_group_node_key_is_lower_case(self):
        """Test group names are normalized."""
        assert GroupNode("VIP").key == "group.vip"
        assert GroupNode("VIP") == GroupNode("vip")

    def test_group_node_round_trip(self):
        """Test decoding a group node keeps its expiration."""
        node = GroupNode("vip", 42).to_node()

        assert node == Node("group.vip", True, 42)
        assert node.kind is NodeKind.GROUP
        assert GroupNode.from_node(node) == GroupNode("vip", 42)

    def test_group_key_case_is_normalized(self):
        """Test a mixed-case group key is stored lower-cased."""
        node = Node("group.VIP", True, 7)

        assert node.key == "group.vip"
        assert node == GroupNode("vip", 7).to_node()
        assert Node("Chat.Color").key == "Chat.Color"

    def test_group_node_rejects_dotted_names(self):
        """Test group names cannot contain a dot."""
        with pytest.raises(ValueError):
            GroupNode("a.b")

    def test_default_group(self):
        """Test the default group sentinel."""
        assert DEFAULT_GROUP.key == "group.default"
        assert DEFAULT_GROUP.expires_at == 0
        assert DEFAULT_GROUP.is_expired() is False

    def test_prefix_node_decoding(self):
        """Test prefix nodes carry weight and text."""
        node = Node("prefix.5.[VIP]")

        assert node.kind is NodeKind.PREFIX
        assert PrefixNode.from_node(node) == PrefixNode(5, "[VIP]")
        assert PrefixNode(5, "[VIP]").key == "prefix.5.[VIP]"

    def test_prefix_text_may_contain_dots(self):
        """Test only the first two segments are structural."""
        assert Node("prefix.1.a.b").payload == PrefixNode(1, "a.b")

    def test_prefix_text_over_limit_is_generic(self):
        """Test out-of-bounds prefix text is not decoded."""
        assert Node("prefix.1." + "x" * 17).kind is NodeKind.GENERIC

    def test_weight_node_decoding(self):
        """Test weight nodes carry an integer."""
        assert WeightNode.from_node(Node("weight.10")) == WeightNode(10)
        assert Node("weight.-3").payload == WeightNode(-3)
        assert Node("weight.abc").kind is NodeKind.GENERIC

    def test_from_node_wrong_kind(self):
        """Test decoding a node of another kind yields None."""
        assert GroupNode.from_node(Node("weight.1")) is None
        assert PrefixNode.from_node(Node("group.vip")) is None
        assert WeightNode.from_node(Node("chat")) is None

    def test_decode_key(self):
        """Test key classification."""
        assert decode_key("group.staff") == (NodeKind.GROUP, GroupNode("staff"))
        assert decode_key("group.a.b") == (NodeKind.GENERIC, None)
        assert decode_key("essentials.fly") == (NodeKind.GENERIC, None)
