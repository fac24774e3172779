# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Unit tests for ${...} parameter resolution.
"""
import pytest

from stackup.errors import ConfigurationError
from stackup.UTILS.string_interpolation import ParameterResolver


class TestPresentAndAbsent:
    """Present values win over defaults; absent ones fall back."""

    @pytest.mark.parametrize("name,value", [
        ("X", "0.5"),
        ("MODEL_NAME", "meta-llama/Llama-3-8B"),
        ("_private", "with spaces and $ signs"),
    ])
    def test_present_value(self, name, value):
        resolver = ParameterResolver({name: value})
        assert resolver.resolve(f"${{{name}}}") == value
        assert resolver.resolve(f"${{{name}:-fallback}}") == value

    @pytest.mark.parametrize("name", ["X", "UNSET_THING", "a1"])
    def test_absent_value(self, name):
        resolver = ParameterResolver({})
        assert resolver.resolve(f"${{{name}}}") == ""
        assert resolver.resolve(f"${{{name}:-fallback}}") == "fallback"

    def test_gpu_memory_utilization_default(self):
        template = "--gpu-memory-utilization=${X:-0.85}"
        assert ParameterResolver({}).resolve(template) == "--gpu-memory-utilization=0.85"
        assert ParameterResolver({"X": "0.5"}).resolve(template) == "--gpu-memory-utilization=0.5"

    def test_empty_value_uses_colon_default(self):
        resolver = ParameterResolver({"X": ""})
        assert resolver.resolve("${X:-d}") == "d"
        assert resolver.resolve("${X-d}") == ""

    def test_alternate_value(self):
        assert ParameterResolver({"X": "1"}).resolve("${X:+on}") == "on"
        assert ParameterResolver({}).resolve("${X:+on}") == ""

    def test_required_value(self):
        assert ParameterResolver({"X": "1"}).resolve("${X:?X is required}") == "1"
        with pytest.raises(ConfigurationError, match="X is required"):
            ParameterResolver({}).resolve("${X:?X is required}")


class TestSyntax:
    """Escapes, nesting and malformed references."""

    def test_multiple_references(self):
        resolver = ParameterResolver({"HOST": "db", "PORT": "5432"})
        assert resolver.resolve("postgres://${HOST}:${PORT}/app") == "postgres://db:5432/app"

    def test_nested_default(self):
        resolver = ParameterResolver({"FALLBACK": "/models"})
        assert resolver.resolve("${MODEL_DIR:-${FALLBACK}/cache}") == "/models/cache"

    def test_dollar_escape(self):
        assert ParameterResolver({"X": "1"}).resolve("cost: $$5 ${X}") == "cost: $5 1"

    def test_escaped_reference_is_literal(self):
        assert ParameterResolver({"X": "1"}).resolve("$${X}") == "${X}"

    def test_lone_dollar_is_literal(self):
        assert ParameterResolver({}).resolve("price $5") == "price $5"

    def test_text_without_references(self):
        assert ParameterResolver({"X": "1"}).resolve("plain text") == "plain text"

    @pytest.mark.parametrize("template", ["${X", "abc ${X:-${Y}", "${"])
    def test_unbalanced(self, template):
        with pytest.raises(ConfigurationError, match="Unbalanced"):
            ParameterResolver({}).resolve(template)

    @pytest.mark.parametrize("template", ["${}", "${1X}", "${X Y}", "${X:=1}"])
    def test_invalid_reference(self, template):
        with pytest.raises(ConfigurationError, match="Invalid variable reference"):
            ParameterResolver({}).resolve(template)

    def test_self_reference_in_default(self):
        with pytest.raises(ConfigurationError, match="Recursive"):
            ParameterResolver({}).resolve("${A:-${A}}")

    def test_self_reference_is_rejected_even_when_set(self):
        with pytest.raises(ConfigurationError, match="Recursive"):
            ParameterResolver({"A": "1"}).resolve("${A:-x${A}}")

    @pytest.mark.parametrize("template,expected", [
        ("${SET:-${OTHER:?OTHER is required}}", "value"),
        ("${SET-${OTHER?OTHER is required}}", "value"),
        ("${OTHER:+${MISSING:?MISSING is required}}", ""),
        ("${SET:?${OTHER:?OTHER is required}}", "value"),
    ])
    def test_unused_argument_is_not_evaluated(self, template, expected):
        assert ParameterResolver({"SET": "value"}).resolve(template) == expected

    def test_used_argument_is_evaluated(self):
        with pytest.raises(ConfigurationError, match="OTHER is required"):
            ParameterResolver({}).resolve("${SET:-${OTHER:?OTHER is required}}")

    def test_unused_argument_is_still_checked(self):
        with pytest.raises(ConfigurationError, match="Invalid variable reference"):
            ParameterResolver({"SET": "value"}).resolve("${SET:-${1X}}")

    def test_same_variable_twice_is_not_recursion(self):
        assert ParameterResolver({"A": "1"}).resolve("${A}${A}") == "11"


class TestPurity:

    def test_variables_are_copied(self):
        variables = {"X": "1"}
        resolver = ParameterResolver(variables)
        variables["X"] = "2"
        assert resolver.resolve("${X}") == "1"

    def test_variables_are_read_only(self):
        resolver = ParameterResolver({"X": "1"})
        with pytest.raises(TypeError):
            resolver.variables["X"] = "2"
