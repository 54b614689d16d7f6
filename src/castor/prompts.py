"""Prompt registry: analysis prompts keyed by extraction profile and kind."""

from __future__ import annotations

import logging
from types import MappingProxyType
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Mapping

logger = logging.getLogger(__name__)

RECEIPT = "financial-receipt"
PAYMENT = "financial-payment"
ANALYSIS_KINDS: tuple[str, ...] = (RECEIPT, PAYMENT)

SYSTEM_INSTRUCTION = """
REGRAS (siga rigorosamente):
- Use "ND" para qualquer dado não encontrado.
- Retorne APENAS o dado extraído no formato especificado, nada mais.
- Datas sempre no formato dia-mês (DD-MM).
- Valores com vírgula como separador decimal (ex: 1250,00).
""".strip()

_DEFAULT_RECEIPT = """
Leia o comprovante e extraia:
DATA (formato DD-MM)
NOME do cliente ou pagador
VALOR total

Se for um comprovante de venda com número, use o formato:
DD-MM VENDA NUMERO NOME VALOR
Caso contrário:
DD-MM NOME VALOR

EXEMPLO: 26-03 VENDA 1747 HELIO FILHO 1285,00
""".strip()

_DEFAULT_PAYMENT = """
Leia o comprovante de pagamento e extraia:
DATA do pagamento (formato DD-MM)
NOME do beneficiário
VALOR pago

FORMATO DE RETORNO: DD-MM NOME VALOR
EXEMPLO: 01-07 DEUZENIR DARC FERREIRA 214,90
""".strip()

_CASH_RECEIPT = """
Se a imagem mostrar cédulas de dinheiro em espécie, conte as cédulas por valor
e informe a soma no formato:
1x R$50, 3x R$20 = R$110,00

Se for um comprovante bancário, extraia:
DATA (formato DD-MM)
NOME
VALOR
FORMATO DE RETORNO: DD-MM NOME VALOR
""".strip()

_ANNOTATED = """
Leia o comprovante e responda com os campos rotulados, um por linha:
DATA: DD-MM
NOME: nome do pagador ou beneficiário
VALOR: valor pago

EXEMPLO:
DATA: 03-07
NOME: RV COMERCIO E SERVICOS LTDA
VALOR: 200,00
""".strip()

BUILTIN_PROMPTS: Mapping[str, Mapping[str, str]] = MappingProxyType(
    {
        "default": {RECEIPT: _DEFAULT_RECEIPT, PAYMENT: _DEFAULT_PAYMENT},
        "cash-receipt": {RECEIPT: _CASH_RECEIPT, PAYMENT: _DEFAULT_PAYMENT},
        "annotated": {RECEIPT: _ANNOTATED, PAYMENT: _ANNOTATED},
    }
)


class PromptRegistry:
    """Resolves the analysis prompt for a (profile, kind) pair.

    Unknown profiles fall back to ``default``; unknown kinds have no prompt.
    """

    def __init__(self, prompts: Mapping[str, Mapping[str, str]] | None = None) -> None:
        source = BUILTIN_PROMPTS if prompts is None else prompts
        self._prompts: dict[str, dict[str, str]] = {
            profile: dict(kinds) for profile, kinds in source.items()
        }

    def get_prompt(self, profile: str, kind: str) -> str | None:
        """Return the prompt text, or None when *kind* is not supported."""
        kinds = self._prompts.get(profile)
        if kinds is None:
            logger.warning("Unknown profile %r; using default prompts", profile)
            kinds = self._prompts.get("default", {})
        return kinds.get(kind)

    def register(self, profile: str, kind: str, prompt: str) -> None:
        """Add or replace a prompt."""
        if not prompt.strip():
            raise ValueError("prompt must be non-empty")
        self._prompts.setdefault(profile, {})[kind] = prompt

    def profiles(self) -> tuple[str, ...]:
        """Registered profile names."""
        return tuple(self._prompts)

    def kinds(self, profile: str = "default") -> tuple[str, ...]:
        """Analysis kinds available for *profile*."""
        return tuple(self._prompts.get(profile, {}))
