"""
Encryption of finished archives through an external cipher program.

A recipe names the program and its parameter list. `{filename}` in a
parameter becomes the file to encrypt and `{output}` the encrypted file,
which is always the input path plus the recipe's extension. A recipe such as

    openssl aes-256-cbc -pbkdf2 -in {filename} -out {filename}.enc -k secret

therefore writes `<archive>.enc`.
"""

import logging
import os
from typing import List, Optional, Tuple

from archivist.models import EncryptionRecipe
from archivist.utils.process import CommandError, ProcessRunner


logger = logging.getLogger(__name__)

FILENAME_PLACEHOLDER = '{filename}'
OUTPUT_PLACEHOLDER = '{output}'


class EncryptionError(Exception):
    """Raised when the cipher program fails."""
    pass


def build_command(recipe: EncryptionRecipe, input_path: str) -> Tuple[List[str], str]:
    """
    Substitute file placeholders into a recipe.

    Args:
        recipe: Encryption recipe
        input_path: File to encrypt

    Returns:
        Tuple of (argument list including the program, output path)
    """
    output_path = f"{input_path}{recipe.extension}"
    args = [recipe.program]
    for parameter in recipe.parameters:
        args.append(
            parameter
            .replace(OUTPUT_PLACEHOLDER, output_path)
            .replace(FILENAME_PLACEHOLDER, input_path)
        )
    return args, output_path


def openssl_recipe(recipe_id: str, cipher: str, password: str) -> EncryptionRecipe:
    """Build the classic `openssl <cipher> -pbkdf2` recipe."""
    return EncryptionRecipe(
        id=recipe_id,
        program='openssl',
        parameters=(
            cipher, '-pbkdf2',
            '-in', FILENAME_PLACEHOLDER,
            '-out', f"{FILENAME_PLACEHOLDER}.enc",
            '-k', password,
        ),
        extension='.enc',
    )


class Encryptor:
    """Runs encryption recipes against files."""

    def __init__(self, runner: Optional[ProcessRunner] = None):
        self.runner = runner or ProcessRunner()

    def encrypt(self, recipe: EncryptionRecipe, input_path: str) -> str:
        """
        Encrypt a file.

        Args:
            recipe: Encryption recipe to run
            input_path: Path of the compressed archive

        Returns:
            Path of the encrypted file

        Raises:
            EncryptionError: If the program fails or produces no output
        """
        if not os.path.isfile(input_path):
            raise EncryptionError(f"File to encrypt not found: {input_path}")

        args, output_path = build_command(recipe, input_path)
        # Parameters may carry keys, log the program only
        logger.info(f"encrypting {os.path.basename(input_path)} with {recipe.program} (recipe: {recipe.id})")

        try:
            self.runner.run(args)
        except CommandError as e:
            self._remove_partial(output_path)
            raise EncryptionError(f"Encryption with recipe '{recipe.id}' failed: {e}")

        if not os.path.isfile(output_path):
            raise EncryptionError(
                f"Encryption with recipe '{recipe.id}' produced no output file: {output_path}"
            )

        return output_path

    @staticmethod
    def _remove_partial(path: str):
        if os.path.exists(path):
            try:
                os.remove(path)
            except OSError as e:
                logger.warning(f"Failed to remove partial encrypted file {path}: {e}")
