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
Utilities for string interpolation using a variable set.
"""
import re
from types import MappingProxyType
from typing import Dict, List, Mapping, Tuple

from ..errors import ConfigurationError

_NAME = re.compile(r'[A-Za-z_][A-Za-z0-9_]*')


class ParameterResolver:
    """
    Substitutes ${VAR} references against an immutable variable set.

    Supported forms:

    - ``${VAR}``: the value, or the empty string when unset.
    - ``${VAR:-default}``: the value when set and non-empty, else default.
    - ``${VAR-default}``: the value when set (even if empty), else default.
    - ``${VAR:+alt}``: alt when VAR is set and non-empty, else empty.
    - ``${VAR:?message}``: the value, or a ConfigurationError when unset or empty.
    - ``$$``: a literal dollar sign.

    Defaults may contain further references. They are resolved once, left to
    right; a default that refers back to a variable being resolved is a
    recursive definition and is rejected, even when the default is not used.
    Only the default or alternate that is actually used is evaluated.
    """

    def __init__(self, variables: Mapping[str, str]):
        """
        Initializes the resolver.

        :param variables: The variable set. A read-only copy is kept.
        """
        self.variables = MappingProxyType(dict(variables))

    def resolve(self, template: str) -> str:
        """
        Resolves every reference in a single string.

        :param template: The raw string.
        :return: The fully substituted string.
        """
        return self._resolve(template, template, ())

    def resolve_list(self, values: List[str]) -> List[str]:
        return [self.resolve(v) for v in values]

    def resolve_mapping(self, values: Mapping[str, str]) -> Dict[str, str]:
        """Resolves the values of a mapping; keys are left as declared."""
        return {k: self.resolve(v) for k, v in values.items()}

    def _resolve(self, text: str, source: str, active: Tuple[str, ...],
                 evaluate: bool = True) -> str:
        out = []
        i = 0
        n = len(text)
        while i < n:
            ch = text[i]
            if ch != '$':
                out.append(ch)
                i += 1
                continue

            nxt = text[i + 1:i + 2]
            if nxt == '$':
                out.append('$')
                i += 2
            elif nxt == '{':
                end = self._find_closing(text, i + 2, source)
                out.append(self._substitute(text[i + 2:end], source, active, evaluate))
                i = end + 1
            else:
                # A lone '$' is literal
                out.append('$')
                i += 1
        return ''.join(out)

    @staticmethod
    def _find_closing(text: str, start: int, source: str) -> int:
        """Returns the index of the '}' that closes the '${' before start."""
        depth = 1
        i = start
        while i < len(text):
            if text.startswith('$$', i):
                i += 2
                continue
            if text.startswith('${', i):
                depth += 1
                i += 2
                continue
            if text[i] == '}':
                depth -= 1
                if depth == 0:
                    return i
            i += 1
        raise ConfigurationError(f"Unbalanced '${{' in {source!r}")

    def _substitute(self, body: str, source: str, active: Tuple[str, ...],
                    evaluate: bool) -> str:
        match = _NAME.match(body)
        if not match:
            raise ConfigurationError(
                f"Invalid variable reference '${{{body}}}' in {source!r}"
            )
        name = match.group(0)
        if name in active:
            chain = " -> ".join(active + (name,))
            raise ConfigurationError(
                f"Recursive variable definition ({chain}) in {source!r}"
            )

        value = self.variables.get(name)
        rest = body[match.end():]
        if not rest:
            return value if value is not None else ''

        colon = rest.startswith(':')
        if colon:
            rest = rest[1:]
        operator, argument = rest[:1], rest[1:]
        if operator not in ('-', '+', '?'):
            raise ConfigurationError(
                f"Invalid variable reference '${{{body}}}' in {source!r}"
            )

        is_set = value is not None and (value != '' or not colon)
        used = is_set if operator == '+' else not is_set

        # An unused argument is only checked for bad syntax and recursion;
        # a `?` inside it does not fire.
        argument = self._resolve(argument, source, active + (name,), evaluate and used)
        if not evaluate:
            return ''

        if operator == '-':
            return value if is_set else argument
        if operator == '+':
            return argument if is_set else ''
        if not is_set:
            message = argument or "required variable is not set"
            raise ConfigurationError(f"Variable '{name}': {message}")
        return value
