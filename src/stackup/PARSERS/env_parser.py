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
Parsers for .env files, supporting quotes and comments.
"""
import io
import logging
import os
from typing import Dict, Optional

from dotenv import dotenv_values

from ..errors import ConfigurationError

logger = logging.getLogger(__name__)


class EnvParser:
    """
    Parser for .env files.

    One KEY=VALUE pair per line. Lines starting with '#' and blank lines are
    ignored, and a key declared twice keeps its last value. Values are taken
    literally: ${...} references inside the file are not expanded.
    """
    @staticmethod
    def parse(env_path: str) -> Dict[str, str]:
        """
        Parses an .env file from a path.

        Args:
            env_path (str): Path to the .env file.

        Returns:
            Dict[str, str]: Dictionary of variables.

        Raises:
            ConfigurationError: If the file cannot be read.
        """
        try:
            with open(env_path, 'r', encoding='utf-8') as f:
                content = f.read()
        except OSError as e:
            raise ConfigurationError(f"Cannot read variable file {env_path}: {e}") from e
        return EnvParser.parse_from_string(content)

    @staticmethod
    def parse_from_string(content: str) -> Dict[str, str]:
        """
        Parses variables from a string.
        Handles quotes, comments and escaped characters.
        """
        values = dotenv_values(stream=io.StringIO(content), interpolate=False)
        env = {}
        for key, value in values.items():
            # Bare keys without '=' are not assignments
            if value is None:
                logger.debug("Ignoring variable without value: %s", key)
                continue
            env[key] = value
        return env

    @staticmethod
    def load(env_path: Optional[str], inherit_environ: bool = False) -> Dict[str, str]:
        """
        Loads the variable set for a run.

        A missing file yields an empty set. With ``inherit_environ`` the
        process environment forms the base and the file overrides it.

        :param env_path: Path to the .env file, or None.
        :param inherit_environ: Whether to start from os.environ.
        :return: The variable set.
        """
        variables: Dict[str, str] = dict(os.environ) if inherit_environ else {}
        if env_path and os.path.exists(env_path):
            variables.update(EnvParser.parse(env_path))
            logger.info("Loaded variables from %s", env_path)
        elif env_path:
            logger.debug("No variable file at %s", env_path)
        return variables
