"""SEFAZ cStat table: category and a user-facing message per status code."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class StatusKind(Enum):
    SUCCESS = "success"
    PROCESSED = "processed"  # lote done, the verdict is in each protNFe
    PENDING = "pending"
    REJECTION = "rejection"


@dataclass(frozen=True)
class StatusInfo:
    code: int
    description: str
    kind: StatusKind
    user_message: str

    @property
    def is_success(self) -> bool:
        return self.kind is StatusKind.SUCCESS

    @property
    def is_pending(self) -> bool:
        return self.kind is StatusKind.PENDING

    @property
    def is_rejection(self) -> bool:
        return self.kind is StatusKind.REJECTION


_S, _D, _P, _R = StatusKind.SUCCESS, StatusKind.PROCESSED, StatusKind.PENDING, StatusKind.REJECTION

_TABLE: dict[int, tuple[str, StatusKind, str]] = {
    100: ("Autorizado o uso da NF-e", _S, "NFe autorizada com sucesso"),
    101: ("Cancelamento de NF-e homologado", _S, "NFe cancelada com sucesso"),
    102: ("Inutilização de número homologado", _S, "Numeração inutilizada com sucesso"),
    103: ("Lote recebido com sucesso", _P, "Lote recebido, aguardando processamento"),
    104: ("Lote processado", _D, "Lote processado, veja o protocolo de cada NF-e"),
    105: ("Lote em processamento", _P, "Lote em processamento, aguarde"),
    106: ("Lote não localizado", _R, "Recibo não encontrado na SEFAZ"),
    107: ("Serviço em Operação", _S, "Serviço da SEFAZ disponível"),
    108: ("Serviço Paralisado Momentaneamente", _R, "SEFAZ fora do ar, tente novamente em alguns minutos"),
    109: ("Serviço Paralisado sem Previsão", _R, "SEFAZ fora do ar sem previsão de retorno"),
    110: ("Uso Denegado", _R, "NFe denegada, verifique a situação fiscal das partes"),
    128: ("Lote de Evento Processado", _D, "Lote de eventos processado, veja o retorno de cada evento"),
    135: ("Evento registrado e vinculado a NF-e", _S, "Evento registrado com sucesso"),
    136: ("Evento registrado, mas não vinculado a NF-e", _S, "Evento registrado sem vínculo com a NFe"),
    150: ("Autorizado o uso da NF-e, autorização fora de prazo", _S, "NFe autorizada (fora do prazo)"),
    155: ("Cancelamento homologado fora de prazo", _S, "Cancelamento homologado (fora do prazo)"),
    204: ("Duplicidade de NF-e", _R, "Esta NFe já foi autorizada anteriormente"),
    205: ("NF-e está denegada na base de dados da SEFAZ", _R, "NFe denegada, verifique a situação fiscal do destinatário"),
    206: ("NF-e já está inutilizada na Base de dados da SEFAZ", _R, "Esta numeração já foi inutilizada"),
    207: ("CNPJ do emitente inválido", _R, "CNPJ do emitente está inválido"),
    208: ("CNPJ do destinatário inválido", _R, "CNPJ/CPF do destinatário está inválido"),
    209: ("IE do emitente inválida", _R, "Inscrição Estadual do emitente está inválida"),
    210: ("IE do destinatário inválida", _R, "Inscrição Estadual do destinatário está inválida"),
    213: (
        "CNPJ-Base do Emitente difere do CNPJ-Base do Certificado Digital",
        _R,
        "Certificado digital não pertence ao emitente",
    ),
    214: (
        "Tamanho da mensagem excedeu o limite estabelecido",
        _R,
        "NFe muito grande, reduza o número de itens ou as informações adicionais",
    ),
    215: (
        "Falha no reconhecimento da autoria ou integridade do arquivo digital",
        _R,
        "Erro na assinatura digital, verifique o certificado",
    ),
    216: ("NF-e com Data de Emissão superior à permitida", _R, "Data de emissão está muito no futuro"),
    217: ("NF-e não consta na base de dados da SEFAZ", _R, "NFe não encontrada na SEFAZ"),
    218: ("NF-e já está cancelada na base de dados da SEFAZ", _R, "Esta NFe já foi cancelada"),
    225: ("Falha no Schema XML da NFe", _R, "XML fora do leiaute, verifique os dados da nota"),
    301: ("Uso Denegado: Irregularidade fiscal do emitente", _R, "Emitente com irregularidade fiscal, regularize sua situação"),
    302: ("Uso Denegado: Irregularidade fiscal do destinatário", _R, "Destinatário com irregularidade fiscal"),
    303: ("Uso Denegado: Destinatário não habilitado a operar na UF", _R, "Destinatário não habilitado nesta UF"),
    401: ("CPF do remetente inválido", _R, "CPF do remetente está inválido"),
    402: ("XML da área de cabeçalho com codificação diferente de UTF-8", _R, "Erro de codificação do XML"),
    403: ("O grupo de informações da NF-e avulsa é de uso exclusivo do Fisco", _R, "Informações exclusivas do Fisco foram preenchidas"),
    404: ("Uso de prefixo de namespace não permitido", _R, "Erro no formato do XML"),
    539: (
        "Duplicidade de NF-e com diferença na Chave de Acesso",
        _R,
        "Já existe NFe com este número e série, consulte a nota original",
    ),
    540: ("CNPJ do destinatário não cadastrado", _R, "CNPJ do destinatário não está cadastrado"),
    573: ("Duplicidade de Evento", _R, "Este evento já foi registrado"),
    656: ("Consumo Indevido", _R, "Limite de consultas excedido, aguarde alguns minutos"),
    999: ("Erro não catalogado", _R, "Erro desconhecido na SEFAZ, tente novamente mais tarde"),
}


def status_info(code: int) -> StatusInfo:
    """Look up a cStat; codes outside the table count as rejections."""
    entry = _TABLE.get(code)
    if entry is None:
        return StatusInfo(
            code=code,
            description=f"Código desconhecido: {code}",
            kind=StatusKind.REJECTION,
            user_message=f"Erro SEFAZ {code}, consulte o manual de orientação do contribuinte",
        )
    description, kind, message = entry
    return StatusInfo(code=code, description=description, kind=kind, user_message=message)


def user_message(code: int | None) -> str | None:
    return status_info(code).user_message if code is not None else None


def format_status(code: int, reason: str) -> str:
    """``[code] user message - xMotivo``, as shown to the operator."""
    return f"[{code}] {status_info(code).user_message} - {reason}"
