from __future__ import annotations

import pandas as pd
import pytest

from opinion_dashboard.core.metadata_loader import build_demographics, parse_surveys

SURVEY_PAYLOADS = [
    {
        "_id": "s1",
        "name": "Pesquisa 10",
        "month": "Janeiro",
        "year": 2023,
        "variables": [
            {"key": "P1", "label": "Avaliação do governo", "type": "single"},
            {"key": "P2", "label": "Voto em 2022", "type": "single"},
            {"key": "PF1", "label": "Sexo", "type": "demographic"},
        ],
    },
    {
        "_id": "s3",
        "month": "Março",
        "year": 2023,
        "variables": [
            {"key": "P1", "label": "Avaliação do governo", "type": "single"},
            {"key": "P3", "label": "Tema da rodada de março", "type": "single"},
            {"key": "PF1", "label": "Sexo", "type": "demographic"},
        ],
    },
    {
        "_id": "s2",
        "month": "Fevereiro",
        "year": 2023,
        "variables": [
            {"key": "P4", "label": "Avaliação do governo", "type": "single"},
            {"key": "PF1", "label": "Gênero", "type": "demographic"},
        ],
    },
]

RESPONSES = {
    "s1": [
        {"P1": "Bom", "P2": "Sim", "PF1": "Feminino", "weights": "2"},
        {"P1": "Ruim", "P2": "Não", "PF1": "Masculino", "weights": "1"},
        {"P1": "#NULL!", "P2": "Sim", "PF1": "Feminino", "weights": "5"},
    ],
    "s2": [
        {"P4": "Bom", "PF1": "Masculino", "weights": 1},
        {"P4": "Bom", "PF1": "Feminino", "weights": 1},
    ],
    "s3": [
        {"P1": "Regular", "P3": "Saúde", "PF1": "Feminino", "weights": "1,5"},
        {"P1": "Bom", "P3": "Educação", "PF1": "Masculino", "weights": "0"},
    ],
}


@pytest.fixture
def surveys():
    return parse_surveys(SURVEY_PAYLOADS)


@pytest.fixture
def responses():
    return {sid: pd.DataFrame(rows, dtype=object) for sid, rows in RESPONSES.items()}


@pytest.fixture
def demographics(surveys, responses):
    return build_demographics(surveys, responses)
