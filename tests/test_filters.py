from __future__ import annotations

from datetime import date

import pandas as pd

from opinion_dashboard.core.filters import (
    DateRange,
    active_filters,
    apply_demographic_filters,
    apply_region_filter,
    available_dates,
    available_regions,
    normalize_state_name,
    region_state_values,
    filter_surveys_by_date,
)
from opinion_dashboard.core.metadata_loader import parse_survey


def _records():
    return pd.DataFrame(
        [
            {"PF1": "Feminino", "PF5": "Até 2 SM", "P1": "Bom"},
            {"PF1": "Masculino", "PF5": "Mais de 5 SM", "P1": "Ruim"},
            {"PF1": "Feminino", "PF5": "Mais de 5 SM", "P1": "Regular"},
            {"PF1": None, "PF5": "Até 2 SM", "P1": "Bom"},
        ],
        dtype=object,
    )


def test_empty_filter_set_is_identity():
    frame = _records()
    assert apply_demographic_filters(frame, {}).equals(frame)
    assert apply_demographic_filters(frame, None).equals(frame)
    assert apply_demographic_filters(frame, {"PF1": []}).equals(frame)


def test_single_key_allow_list():
    out = apply_demographic_filters(_records(), {"PF1": ["Feminino"]})
    assert out["P1"].tolist() == ["Bom", "Regular"]


def test_keys_are_combined_with_and():
    out = apply_demographic_filters(_records(), {"PF1": ["Feminino"], "PF5": ["Mais de 5 SM"]})
    assert out["P1"].tolist() == ["Regular"]


def test_multiple_allowed_values():
    out = apply_demographic_filters(_records(), {"PF1": ["Feminino", "Masculino"], "PF5": []})
    assert len(out) == 3


def test_unknown_key_yields_empty_set():
    out = apply_demographic_filters(_records(), {"PF9": ["x"]})
    assert out.empty


def test_key_outside_demographic_universe_yields_empty_set(demographics):
    out = apply_demographic_filters(_records(), {"PF5": ["Até 2 SM"]}, demographics)
    assert out.empty


def test_filter_accepts_list_of_mappings_and_numeric_values():
    records = [{"PF2": 1, "P1": "a"}, {"PF2": 2, "P1": "b"}]
    out = apply_demographic_filters(records, {"PF2": ["1"]})
    assert out["P1"].tolist() == ["a"]


def test_filter_does_not_mutate_input():
    frame = _records()
    before = frame.copy()
    apply_demographic_filters(frame, {"PF1": ["Masculino"]})
    assert frame.equals(before)


def test_active_filters_drops_empty_allow_lists():
    assert active_filters({"PF1": [], "PF2": ["a"]}) == {"PF2": ["a"]}


def _rounds():
    return [
        parse_survey({"_id": "mar", "month": "Março", "year": 2023}),
        parse_survey({"_id": "jan", "month": "Janeiro", "year": 2023}),
        parse_survey({"_id": "dec", "month": "Dezembro", "year": 2022}),
        parse_survey({"_id": "undated", "month": "Maio"}),
    ]


def test_date_range_is_inclusive():
    out = filter_surveys_by_date(_rounds(), DateRange(start=date(2023, 1, 1), end=date(2023, 3, 1)))
    assert [s.id for s in out] == ["mar", "jan"]


def test_date_range_missing_bounds():
    assert [s.id for s in filter_surveys_by_date(_rounds(), DateRange(end=date(2022, 12, 1)))] == ["dec"]
    assert [s.id for s in filter_surveys_by_date(_rounds(), DateRange(start=date(2023, 2, 1)))] == ["mar"]


def test_unbounded_range_keeps_everything():
    assert len(filter_surveys_by_date(_rounds(), DateRange())) == 4
    assert len(filter_surveys_by_date(_rounds(), None)) == 4


def test_available_dates_are_chronological():
    points = available_dates(_rounds())
    assert points == [
        (date(2022, 12, 1), "Dezembro 2022"),
        (date(2023, 1, 1), "Janeiro 2023"),
        (date(2023, 3, 1), "Março 2023"),
    ]


def _state_records():
    return pd.DataFrame(
        [
            {"UF": "São Paulo", "P1": "Bom"},
            {"UF": "BA", "P1": "Ruim"},
            {"UF": " Rio Grande do Sul ", "P1": "Regular"},
            {"UF": "Pernambuco", "P1": "Bom"},
            {"UF": None, "P1": "Bom"},
        ],
        dtype=object,
    )


def test_region_filter_keeps_states_of_selected_regions():
    out = apply_region_filter(_state_records(), ["Nordeste"])
    assert out["P1"].tolist() == ["Ruim", "Bom"]

    out = apply_region_filter(_state_records(), ["Sul", "Sudeste"])
    assert out["P1"].tolist() == ["Bom", "Regular"]


def test_region_filter_without_regions_is_identity():
    frame = _state_records()
    assert apply_region_filter(frame, []).equals(frame)
    assert apply_region_filter(frame, None).equals(frame)


def test_region_filter_uses_alternate_state_column():
    frame = pd.DataFrame([{"PF10": "AM", "P1": "a"}, {"PF10": "GO", "P1": "b"}], dtype=object)
    assert apply_region_filter(frame, ["Norte"])["P1"].tolist() == ["a"]
    assert apply_region_filter(frame, ["Centro-Oeste"], state_key="PF10")["P1"].tolist() == ["b"]


def test_region_filter_without_state_column_or_match_is_empty():
    assert apply_region_filter(pd.DataFrame([{"P1": "a"}], dtype=object), ["Sul"]).empty
    assert apply_region_filter(_state_records(), ["Norte"]).empty


def test_region_helpers():
    assert available_regions() == ["Centro-Oeste", "Nordeste", "Norte", "Sudeste", "Sul"]
    assert normalize_state_name("sp") == "São Paulo"
    assert normalize_state_name(" Bahia ") == "Bahia"
    assert normalize_state_name(None) is None
    assert region_state_values(["DF", "Goiás", "Paraná", "DF"], ["Centro-Oeste"]) == ["DF", "Goiás"]
