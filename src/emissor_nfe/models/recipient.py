from __future__ import annotations

from dataclasses import dataclass

from emissor_nfe.models.emitter import Address
from emissor_nfe.utils.uf import FOREIGN_UF

# indIEDest
IE_CONTRIBUINTE = "1"
IE_ISENTO = "2"
IE_NAO_CONTRIBUINTE = "9"
IND_IE_DEST = (IE_CONTRIBUINTE, IE_ISENTO, IE_NAO_CONTRIBUINTE)


@dataclass(frozen=True)
class Recipient:
    """Recipient (destinatário), the buyer of the goods."""

    documento: str  # CPF, CNPJ or foreign id
    nome: str
    endereco: Address
    ind_ie_dest: str = IE_NAO_CONTRIBUINTE
    ie: str | None = None
    email: str | None = None

    @property
    def is_foreign(self) -> bool:
        return self.endereco.uf == FOREIGN_UF or self.endereco.cod_pais != "1058"

    @classmethod
    def from_dict(cls, d: dict) -> Recipient:
        """Create a Recipient from a YAML-loaded dict, applying defaults for optional fields."""
        ind = str(d.get("ind_ie_dest", IE_CONTRIBUINTE if d.get("ie") else IE_NAO_CONTRIBUINTE))
        return cls(
            documento=str(d.get("documento", "")),
            nome=d.get("nome", ""),
            endereco=Address.from_dict(d.get("endereco", d)),
            ind_ie_dest=ind,
            ie=str(d["ie"]) if d.get("ie") else None,
            email=d.get("email"),
        )
