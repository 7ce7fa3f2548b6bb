"""Mock partner bank exposing the validacao / desembolso API used by the gateway"""

import json
import os
import uuid
from pathlib import Path
from typing import Dict, Optional

from fastapi import FastAPI
from pydantic import BaseModel

app = FastAPI(title="Mock Bank Server", version="1.0.0")

BANK_NAME = os.environ.get("BANCO_NOME", "Banco GHW")
# Optional JSON list of customers, otherwise the built-in ones are served
DATA_FILE = Path(os.environ.get("MOCK_BANK_DATA", "/bank_stub/clientes.json"))

MIN_MATCH_SCORE = 70

DEFAULT_CLIENTES = [
    {
        "nuit": "123456789",
        "nome_completo": "Joao Silva",
        "telefone": "841234567",
        "bi": "110100123456A",
        "status_conta": "ATIVA",
        "numero_conta": "0001234567",
        "limite_credito": 40000,
        "score_credito": 720,
        "saldo": 150000,
        "emprestimos_ativos": 0,
    },
    {
        "nuit": "987654321",
        "nome_completo": "Maria Santos",
        "telefone": "861234567",
        "bi": "110100654321B",
        "status_conta": "BLOQUEADA",
        "numero_conta": "0007654321",
        "limite_credito": 20000,
        "score_credito": 580,
        "saldo": 500,
        "emprestimos_ativos": 1,
    },
]


def load_clientes() -> Dict[str, dict]:
    rows = json.loads(DATA_FILE.read_text()) if DATA_FILE.exists() else DEFAULT_CLIENTES
    return {row["nuit"]: dict(row) for row in rows}


CLIENTES = load_clientes()
DESEMBOLSOS: Dict[str, dict] = {}


class ValidacaoRequest(BaseModel):
    nuit: Optional[str] = None
    nome: Optional[str] = None
    telefone: Optional[str] = None
    bi: Optional[str] = None
    valor_solicitado: Optional[float] = None


class DesembolsoRequest(BaseModel):
    nuit: Optional[str] = None
    valor: float
    numero_emola: str
    referencia_payja: str
    descricao: Optional[str] = None


def _name_match(a: str, b: str) -> float:
    """Share of words in common, 0-100"""
    left, right = set(a.lower().split()), set(b.lower().split())
    if not left or not right:
        return 0.0
    return len(left & right) / max(len(left), len(right)) * 100


def approved_limit(cliente: dict) -> int:
    limit = cliente["limite_credito"]
    if cliente["score_credito"] < 600:
        limit *= 0.5
    elif cliente["score_credito"] < 700:
        limit *= 0.7
    if cliente["emprestimos_ativos"] > 0:
        limit *= 0.6
    if cliente["saldo"] < 1000:
        limit *= 0.8
    return round(limit)


@app.get("/api/health")
def health():
    return {"status": "online", "banco": BANK_NAME, "versao": "1.0.0"}


@app.post("/api/validacao/verificar")
def verificar(body: ValidacaoRequest):
    if not body.nuit:
        return {"sucesso": False, "elegivel": False, "erro": "NUIT e obrigatorio"}

    cliente = CLIENTES.get(body.nuit)
    if cliente is None:
        return {
            "sucesso": True,
            "elegivel": False,
            "motivo": "Cliente nao possui conta neste banco",
            "codigo": "CLIENTE_NAO_ENCONTRADO",
        }

    if cliente["status_conta"] != "ATIVA":
        return {
            "sucesso": True,
            "elegivel": False,
            "motivo": f"Conta bancaria {cliente['status_conta'].lower()}",
            "codigo": "CONTA_INATIVA",
        }

    # NUIT 30, name 25, phone 20, BI 15, active account 10
    score = 30.0 + 10.0
    if body.nome:
        score += _name_match(body.nome, cliente["nome_completo"]) / 100 * 25
    if body.telefone and body.telefone == cliente["telefone"]:
        score += 20
    if body.bi and body.bi == cliente["bi"]:
        score += 15

    if score < MIN_MATCH_SCORE:
        return {
            "sucesso": True,
            "elegivel": False,
            "motivo": "Dados nao conferem suficientemente com os registros do banco",
            "codigo": "DADOS_INCONSISTENTES",
            "score_comparacao": round(score),
        }

    limit = approved_limit(cliente)
    if body.valor_solicitado and body.valor_solicitado > limit:
        return {
            "sucesso": True,
            "elegivel": False,
            "motivo": f"Valor solicitado ({body.valor_solicitado} MZN) excede limite aprovado ({limit} MZN)",
            "codigo": "VALOR_EXCEDE_LIMITE",
            "limite_aprovado": limit,
        }

    return {
        "sucesso": True,
        "elegivel": True,
        "cliente": {
            "nuit": cliente["nuit"],
            "nome": cliente["nome_completo"],
            "numero_conta": cliente["numero_conta"],
            "score_credito": cliente["score_credito"],
        },
        "limite_aprovado": limit,
        "score_comparacao": round(score),
    }


@app.post("/api/desembolso/executar")
def executar(body: DesembolsoRequest):
    cliente = CLIENTES.get(body.nuit or "")
    if cliente is None:
        return {"sucesso": False, "erro": "Cliente nao encontrado", "codigo": "CLIENTE_NAO_ENCONTRADO"}

    # Same reference never pays twice
    if body.referencia_payja in DESEMBOLSOS:
        return {"sucesso": True, "desembolso": DESEMBOLSOS[body.referencia_payja]}

    if cliente["saldo"] < body.valor:
        return {"sucesso": False, "erro": "Saldo insuficiente para desembolso", "codigo": "SALDO_INSUFICIENTE"}

    cliente["saldo"] -= body.valor
    desembolso = {
        "id": f"DES-{uuid.uuid4().hex[:10].upper()}",
        "valor": body.valor,
        "numero_emola": body.numero_emola,
        "status": "CONCLUIDO",
    }
    DESEMBOLSOS[body.referencia_payja] = desembolso
    return {"sucesso": True, "desembolso": desembolso}
