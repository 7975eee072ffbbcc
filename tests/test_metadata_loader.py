from __future__ import annotations

from datetime import date

import pandas as pd

from opinion_dashboard.core.metadata_loader import (
    build_demographics,
    classify_questions,
    format_survey_title,
    month_ordinal,
    parse_survey,
    sort_surveys,
    survey_date,
)


def _survey(sid, month, year, variables=(), name=""):
    return parse_survey({"_id": sid, "month": month, "year": year, "variables": list(variables), "name": name})


def test_parse_survey_drops_keyless_variables_and_defaults_label():
    survey = parse_survey(
        {
            "_id": "abc",
            "month": "Maio",
            "year": "2025",
            "variables": [{"key": "P1", "label": "Q"}, {"label": "no key"}, {"key": "P2"}],
        }
    )
    assert survey.year == 2025
    assert [v.key for v in survey.variables] == ["P1", "P2"]
    assert survey.variables[1].label == "P2"


def test_month_ordinal_and_survey_date():
    assert month_ordinal("Março") == 3
    assert month_ordinal("March") == 0
    assert survey_date(_survey("a", "Dezembro", 2022)) == date(2022, 12, 1)
    assert survey_date(_survey("b", "Unknown", 2022)) == date(2022, 1, 1)
    assert survey_date(_survey("c", "Maio", None)) is None


def test_sort_surveys_orders_by_year_then_month():
    jan = _survey("jan", "Janeiro", 2023)
    mar = _survey("mar", "Março", 2023)
    feb = _survey("feb", "Fevereiro", 2023)
    assert [s.id for s in sort_surveys([jan, mar, feb])] == ["jan", "feb", "mar"]
    assert [s.id for s in sort_surveys([mar, feb, jan])] == ["jan", "feb", "mar"]


def test_sort_surveys_unknown_month_sorts_first_within_year():
    odd = _survey("odd", "Sometime", 2023)
    jan = _survey("jan", "Janeiro", 2023)
    old = _survey("old", "Dezembro", 2022)
    assert [s.id for s in sort_surveys([jan, odd, old])] == ["old", "odd", "jan"]


def test_format_survey_title():
    assert format_survey_title(_survey("s1", "Maio", 2025, name="Pesquisa 44")) == "Pesquisa 44 Maio 2025"
    assert format_survey_title(_survey("s1", "Maio", 2025)) == "Maio 2025"
    assert format_survey_title(_survey("s1", "", None, name="Especial")) == "Especial"
    assert format_survey_title(_survey("abcdefgh", "", None)) == "Pesquisa abcdef"


def test_classify_questions_historic_and_unique(surveys):
    groups = classify_questions(surveys)

    assert [h.label for h in groups.historic] == ["Avaliação do governo"]
    historic = groups.historic[0]
    assert historic.key == "P1"
    assert [(o.survey.id, o.key) for o in historic.occurrences] == [("s1", "P1"), ("s3", "P1"), ("s2", "P4")]

    assert [(g.survey.id, [e.key for e in g.entries]) for g in groups.unique] == [("s1", ["P2"]), ("s3", ["P3"])]


def test_classify_label_in_two_of_three_surveys():
    a = _survey("a", "Janeiro", 2023, [{"key": "P1", "label": "X"}, {"key": "P2", "label": "Only A"}])
    b = _survey("b", "Fevereiro", 2023, [{"key": "P7", "label": "X"}])
    c = _survey("c", "Março", 2023, [{"key": "P1", "label": "Y"}, {"key": "PF1", "label": "X"}])

    groups = classify_questions([a, b, c])

    assert [h.label for h in groups.historic] == ["X"]
    unique_labels = {e.label for g in groups.unique for e in g.entries}
    assert unique_labels == {"Only A", "Y"}
    # PF1 is demographic, so only the four P<n> variables are classified
    assert groups.occurrence_count() == 4


def test_classify_ignores_non_question_keys():
    s = _survey("a", "Janeiro", 2023, [{"key": "PF1", "label": "Sexo"}, {"key": "P1_OUT", "label": "Outro"}])
    groups = classify_questions([s])
    assert groups.historic == ()
    assert groups.unique == ()


def test_classify_is_deterministic(surveys):
    assert classify_questions(surveys) == classify_questions(list(surveys))


def test_build_demographics(surveys, responses):
    demographics = build_demographics(surveys, responses)
    assert len(demographics) == 1
    d = demographics[0]
    assert d.key == "PF1"
    assert d.label == "Sexo"
    assert d.values == ("Feminino", "Masculino")


def test_build_demographics_skips_empty_and_null_values():
    s = _survey("a", "Janeiro", 2023, [{"key": "PF2", "label": "Renda"}, {"key": "PF3", "label": "Idade"}])
    frame = pd.DataFrame(
        [{"PF2": "#NULL!", "PF3": None}, {"PF2": "B", "PF3": ""}, {"PF2": "A", "PF3": None}],
        dtype=object,
    )
    demographics = build_demographics([s], {"a": frame})
    assert [(d.key, d.values) for d in demographics] == [("PF2", ("A", "B"))]
