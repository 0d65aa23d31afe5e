from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from emissor_nfe.models.emitter import Emitter
from emissor_nfe.models.recipient import Recipient
from emissor_nfe.models.taxes import ItemTaxes
from emissor_nfe.services.exceptions import InvalidTotals, NFeValidationError
from emissor_nfe.utils.formatters import CENT, money
from emissor_nfe.utils.validators import parse_decimal

PRODUCAO = "producao"
HOMOLOGACAO = "homologacao"
ENVIRONMENTS = (PRODUCAO, HOMOLOGACAO)

SEM_GTIN = "SEM GTIN"
SEM_PAGAMENTO = "90"


def _dec(d: dict, key: str, name: str, default: str = "0") -> Decimal:
    return parse_decimal(d.get(key, default), name)


@dataclass(frozen=True)
class LineItem:
    codigo: str
    descricao: str
    ncm: str
    cfop: str
    quantidade: Decimal
    valor_unitario: Decimal
    unidade: str = "UN"
    gtin: str = SEM_GTIN
    cest: str | None = None
    origem: int = 0
    valor_total_informado: Decimal | None = None
    frete: Decimal = Decimal("0")
    seguro: Decimal = Decimal("0")
    desconto: Decimal = Decimal("0")
    impostos: ItemTaxes = field(default_factory=ItemTaxes)

    def __post_init__(self) -> None:
        if self.quantidade <= 0:
            raise NFeValidationError(f"Item {self.codigo}: quantidade deve ser maior que zero")
        if not 0 <= self.origem <= 8:
            raise NFeValidationError(f"Item {self.codigo}: origem deve estar entre 0 e 8")
        if self.valor_total_informado is not None:
            computed = self.computed_total
            if abs(self.valor_total_informado - computed) > CENT:
                raise InvalidTotals(
                    f"Item {self.codigo}: valor total informado {self.valor_total_informado} "
                    f"difere de quantidade x valor unitário ({computed})"
                )

    @property
    def computed_total(self) -> Decimal:
        return money(self.quantidade * self.valor_unitario)

    @property
    def total_value(self) -> Decimal:
        """vProd of the item: the caller total when supplied and consistent, else qty x unit."""
        if self.valor_total_informado is not None:
            return money(self.valor_total_informado)
        return self.computed_total

    @classmethod
    def from_dict(cls, d: dict) -> LineItem:
        total = d.get("valor_total")
        return cls(
            codigo=str(d.get("codigo", "")),
            descricao=d.get("descricao", ""),
            ncm=str(d.get("ncm", "")),
            cfop=str(d.get("cfop", "")),
            quantidade=_dec(d, "quantidade", "quantidade", "1"),
            valor_unitario=_dec(d, "valor_unitario", "valor_unitario"),
            unidade=d.get("unidade", "UN"),
            gtin=str(d.get("gtin") or SEM_GTIN),
            cest=str(d["cest"]) if d.get("cest") else None,
            origem=int(d.get("origem", 0)),
            valor_total_informado=parse_decimal(total, "valor_total") if total is not None else None,
            frete=_dec(d, "frete", "frete"),
            seguro=_dec(d, "seguro", "seguro"),
            desconto=_dec(d, "desconto", "desconto"),
            impostos=ItemTaxes.from_dict(d.get("impostos") or {}),
        )


@dataclass(frozen=True)
class PaymentMethod:
    tipo: str  # tPag, e.g. 01 dinheiro, 03 cartão de crédito, 17 PIX, 90 sem pagamento
    valor: Decimal

    @classmethod
    def from_dict(cls, d: dict) -> PaymentMethod:
        return cls(tipo=str(d.get("tipo", "01")).zfill(2), valor=_dec(d, "valor", "pagamento valor"))


@dataclass(frozen=True)
class Payment:
    formas: tuple[PaymentMethod, ...]
    indicador: int = 0  # 0 à vista, 1 a prazo

    @classmethod
    def from_dict(cls, d: dict) -> Payment:
        formas = tuple(PaymentMethod.from_dict(f) for f in d.get("formas", []))
        return cls(formas=formas, indicador=int(d.get("indicador", 0)))


@dataclass(frozen=True)
class Carrier:
    documento: str
    nome: str
    ie: str | None = None
    endereco: str | None = None
    municipio: str | None = None
    uf: str | None = None

    @classmethod
    def from_dict(cls, d: dict) -> Carrier:
        return cls(
            documento=str(d.get("documento", "")),
            nome=d.get("nome", ""),
            ie=str(d["ie"]) if d.get("ie") else None,
            endereco=d.get("endereco"),
            municipio=d.get("municipio"),
            uf=d.get("uf"),
        )


@dataclass(frozen=True)
class Volume:
    quantidade: int = 1
    especie: str | None = None
    marca: str | None = None
    numeracao: str | None = None
    peso_liquido: Decimal | None = None
    peso_bruto: Decimal | None = None

    @classmethod
    def from_dict(cls, d: dict) -> Volume:
        return cls(
            quantidade=int(d.get("quantidade", 1)),
            especie=d.get("especie"),
            marca=d.get("marca"),
            numeracao=d.get("numeracao"),
            peso_liquido=parse_decimal(d["peso_liquido"], "peso_liquido") if d.get("peso_liquido") is not None else None,
            peso_bruto=parse_decimal(d["peso_bruto"], "peso_bruto") if d.get("peso_bruto") is not None else None,
        )


@dataclass(frozen=True)
class Transport:
    modalidade: int = 9  # modFrete: 9 = sem ocorrência de transporte
    transportadora: Carrier | None = None
    volumes: tuple[Volume, ...] = ()

    @classmethod
    def from_dict(cls, d: dict) -> Transport:
        return cls(
            modalidade=int(d.get("modalidade", 9)),
            transportadora=Carrier.from_dict(d["transportadora"]) if d.get("transportadora") else None,
            volumes=tuple(Volume.from_dict(v) for v in d.get("volumes", [])),
        )


@dataclass(frozen=True)
class InvoiceDraft:
    emitter: Emitter
    recipient: Recipient
    itens: tuple[LineItem, ...]
    serie: int
    numero: int
    environment: str = HOMOLOGACAO
    natureza_operacao: str = "VENDA DE MERCADORIA"
    tipo_operacao: int = 1  # tpNF: 0 entrada, 1 saída
    finalidade: int = 1  # finNFe: 1 normal
    consumidor_final: int = 0
    presenca: int = 1  # indPres: 1 operação presencial
    tipo_emissao: int = 1  # tpEmis: 1 normal
    modelo: str = "55"
    pagamento: Payment | None = None
    transporte: Transport | None = None
    info_complementar: str | None = None

    def __post_init__(self) -> None:
        if self.environment not in ENVIRONMENTS:
            raise NFeValidationError(
                f"Ambiente inválido: '{self.environment}' (use {', '.join(ENVIRONMENTS)})"
            )

    @property
    def tp_amb(self) -> str:
        return "1" if self.environment == PRODUCAO else "2"

    @classmethod
    def from_dict(cls, d: dict, emitter: Emitter, environment: str | None = None) -> InvoiceDraft:
        """Create a draft from a YAML-loaded nota file; the emitter comes from emitter.yaml."""
        pagamento = d.get("pagamento")
        transporte = d.get("transporte")
        return cls(
            emitter=emitter,
            recipient=Recipient.from_dict(d.get("destinatario") or {}),
            itens=tuple(LineItem.from_dict(i) for i in d.get("itens", [])),
            serie=int(d.get("serie", 1)),
            numero=int(d.get("numero", 0)),
            environment=environment or d.get("ambiente", HOMOLOGACAO),
            natureza_operacao=d.get("natureza_operacao", "VENDA DE MERCADORIA"),
            tipo_operacao=int(d.get("tipo_operacao", 1)),
            finalidade=int(d.get("finalidade", 1)),
            consumidor_final=int(d.get("consumidor_final", 0)),
            presenca=int(d.get("presenca", 1)),
            tipo_emissao=int(d.get("tipo_emissao", 1)),
            pagamento=Payment.from_dict(pagamento) if pagamento else None,
            transporte=Transport.from_dict(transporte) if transporte else None,
            info_complementar=d.get("info_complementar"),
        )

