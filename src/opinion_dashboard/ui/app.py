from __future__ import annotations

import logging
import traceback
from typing import Dict, List, Optional

import pandas as pd
import streamlit as st

from opinion_dashboard.config import APP_NAME, APP_VERSION, CACHE_TTL_SECONDS, LOG_LEVEL, MOE_WARNING_THRESHOLD
from opinion_dashboard.core.audit import summarize_sample
from opinion_dashboard.core.data_loader import DashboardData, DataLoaderError, timed_load_dashboard_data
from opinion_dashboard.core.export import (
    DISTRIBUTION_PREFIX,
    TIME_SERIES_PREFIX,
    comparison_to_csv,
    distribution_to_csv,
    export_filename,
    time_series_to_csv,
)
from opinion_dashboard.core.filters import (
    DateRange,
    apply_demographic_filters,
    apply_region_filter,
    available_dates,
    available_regions,
    detect_state_key,
)
from opinion_dashboard.core.metadata_loader import DemographicDescriptor, QuestionGroups, Survey, format_survey_title
from opinion_dashboard.core.query_engine import (
    DistributionResult,
    Normalizer,
    SelectedQuestion,
    SelectionKind,
    TimeSeriesResult,
    compare_demographic,
    compare_waves,
    demographic_profile,
    filters_after_selection_change,
    find_historic_question,
    find_survey_for_selection,
    normalizer_for_selection,
    run_selection,
    word_cloud_terms,
)

logger = logging.getLogger(__name__)

FILTER_KEY_PREFIX = "filter_"
# Demographics offered in the comparison panel when present (gender, income)
COMPARISON_DEFAULT_KEYS = ["PF01", "PF05"]
PROFILE_KEYS = ["PF1", "PF01", "PF2_faixas"]


@st.cache_data(ttl=CACHE_TTL_SECONDS, show_spinner=False)
def _load_data() -> DashboardData:
    data, elapsed = timed_load_dashboard_data()
    logger.info("Loaded dashboard data in %.2fs", elapsed)
    return data


# ---------------------------------------------------------------------------
# Selection and filters
# ---------------------------------------------------------------------------

def _selection_options(groups: QuestionGroups) -> List[SelectedQuestion]:
    options = [SelectedQuestion.historic(h) for h in groups.historic]
    for group in groups.unique:
        options.extend(SelectedQuestion.unique(group.survey, e.key, e.label) for e in group.entries)
    return options


def _format_selection(sel: SelectedQuestion, surveys: List[Survey]) -> str:
    if sel.kind is SelectionKind.HISTORIC:
        return f"Histórica · {sel.label}"
    survey = next((s for s in surveys if s.id == sel.survey_id), None)
    when = f"{survey.month} {survey.year}" if survey is not None else sel.survey_id
    return f"Única ({when}) · {sel.label}"


def _render_question_selector(data: DashboardData) -> Optional[SelectedQuestion]:
    options = _selection_options(data.question_groups)
    if not options:
        st.info("Nenhuma pergunta disponível nas pesquisas carregadas.")
        return None

    selection = st.selectbox(
        "Pergunta",
        options=options,
        format_func=lambda s: _format_selection(s, data.surveys),
        key="selected_question",
    )

    previous = st.session_state.get("previous_question")
    current_filters = _current_filters(data.demographics)
    new_filters = filters_after_selection_change(previous, selection, current_filters)
    if new_filters != current_filters:
        for d in data.demographics:
            st.session_state.pop(f"{FILTER_KEY_PREFIX}{d.key}", None)
    st.session_state["previous_question"] = selection
    return selection


def _current_filters(demographics: List[DemographicDescriptor]) -> Dict[str, List[str]]:
    out: Dict[str, List[str]] = {}
    for d in demographics:
        values = st.session_state.get(f"{FILTER_KEY_PREFIX}{d.key}") or []
        if values:
            out[d.key] = list(values)
    return out


def _render_demographic_filters(demographics: List[DemographicDescriptor]) -> Dict[str, List[str]]:
    st.sidebar.header("Filtros demográficos")
    if not demographics:
        st.sidebar.caption("Nenhuma variável demográfica disponível.")
        return {}

    for d in demographics:
        st.sidebar.multiselect(d.label, options=list(d.values), key=f"{FILTER_KEY_PREFIX}{d.key}")

    if st.sidebar.button("Limpar filtros"):
        for d in demographics:
            st.session_state.pop(f"{FILTER_KEY_PREFIX}{d.key}", None)
        st.rerun()

    return _current_filters(demographics)


def _state_key(data: DashboardData) -> Optional[str]:
    for frame in data.responses.values():
        key = detect_state_key(frame.columns)
        if key:
            return key
    return None


def _render_region_filter(data: DashboardData) -> List[str]:
    if _state_key(data) is None:
        return []
    regions = st.sidebar.multiselect("Regiões", options=available_regions(), key="filter_regions")
    return list(regions)


def _render_grouping_toggle(selection: SelectedQuestion, data: DashboardData) -> Optional[Normalizer]:
    normalizer = normalizer_for_selection(selection, data.surveys, data.responses, data.question_groups)
    if normalizer is None:
        return None
    grouped = st.sidebar.checkbox("Agrupar escala (Ótimo/Bom, Ruim/Péssimo)", value=True, key="group_scale")
    return normalizer if grouped else None


def _render_date_range(surveys: List[Survey]) -> Optional[DateRange]:
    points = available_dates(surveys)
    if len(points) < 2:
        return None

    labels = {d: label for d, label in points}
    start, end = st.select_slider(
        "Período",
        options=[d for d, _ in points],
        value=(points[0][0], points[-1][0]),
        format_func=lambda d: labels.get(d, str(d)),
    )
    return DateRange(start=start, end=end)


# ---------------------------------------------------------------------------
# Result panels
# ---------------------------------------------------------------------------

def _render_time_series(result: TimeSeriesResult) -> None:
    if not result.series:
        st.warning("Sem respostas válidas para os filtros selecionados.")
        return

    x_values = [p.x for p in result.series[0].data]
    frame = pd.DataFrame({s.id: [p.y for p in s.data] for s in result.series}, index=x_values)
    st.line_chart(frame, color=[s.color for s in result.series], y_label="%")

    csv_text = time_series_to_csv(result)
    st.download_button(
        "Exportar CSV",
        data=csv_text,
        file_name=export_filename(result.question_key, prefix=TIME_SERIES_PREFIX),
        mime="text/csv",
        disabled=not csv_text,
    )


def _render_wave_comparison(
    selection: SelectedQuestion,
    data: DashboardData,
    filters: Dict[str, List[str]],
    regions: List[str],
    normalizer: Optional[Normalizer],
) -> None:
    question = find_historic_question(selection, data.question_groups)
    if question is None:
        return
    rounds = []
    for occ in question.occurrences:
        if all(r.id != occ.survey.id for r, _ in rounds):
            rounds.append((occ.survey, occ.key))
    if len(rounds) < 2:
        return

    with st.expander("Comparar duas rodadas", expanded=False):
        titles = [format_survey_title(s) for s, _ in rounds]
        c1, c2 = st.columns(2)
        first_idx = c1.selectbox("Rodada A", options=range(len(rounds)), format_func=lambda i: titles[i], key="wave_first")
        second_idx = c2.selectbox(
            "Rodada B",
            options=range(len(rounds)),
            index=len(rounds) - 1,
            format_func=lambda i: titles[i],
            key="wave_second",
        )
        (first_survey, first_key), (second_survey, second_key) = rounds[first_idx], rounds[second_idx]

        result = compare_waves(
            first_survey,
            second_survey,
            data.responses,
            first_key,
            second_key,
            filters=filters,
            regions=regions,
            weight_field=data.weight_field,
            normalizer=normalizer,
        )
        if not result.compatibility.is_compatible:
            missing = list(result.compatibility.missing_in_first) + list(result.compatibility.missing_in_second)
            st.warning(f"As rodadas não têm as mesmas opções de resposta: {', '.join(missing)}.")
        if not result.rows:
            st.caption("Sem respostas válidas para os filtros selecionados.")
            return

        frame = pd.DataFrame(result.to_records()).set_index("answer")
        frame.columns = [titles[first_idx], titles[second_idx]] if first_idx != second_idx else ["A", "B"]
        st.bar_chart(frame, stack=False, y_label="%")


def _render_distribution(
    result: DistributionResult,
    records: pd.DataFrame,
    weight_field: str,
    normalizer: Optional[Normalizer] = None,
) -> None:
    snapshot = summarize_sample(records, result.question_key, weight_field=weight_field, normalizer=normalizer)

    c1, c2, c3, c4 = st.columns(4)
    c1.metric("Entrevistados", f"{snapshot.total_respondents:,}")
    c2.metric("Peso total da amostra", f"{snapshot.weighted_total:,.2f}")
    c3.metric("Respostas válidas", f"{snapshot.valid_responses:,} ({snapshot.valid_share:.0f}%)")
    c4.metric("Margem de erro", f"±{snapshot.margin_of_error:.2f} p.p.")

    if snapshot.margin_is_high:
        st.warning(
            f"Margem de erro acima de {MOE_WARNING_THRESHOLD:.0f}% para a seleção atual; "
            "interprete os resultados com cautela."
        )

    if not result.rows:
        st.warning("Sem respostas válidas para os filtros selecionados.")
        return

    frame = pd.DataFrame(result.to_records()).set_index("response")
    st.bar_chart(frame["percentage"], y_label="%")

    with st.expander("Nuvem de termos", expanded=False):
        terms = word_cloud_terms(result.rows)
        if terms:
            st.dataframe(pd.DataFrame([{"termo": t.text, "peso": t.value} for t in terms]), use_container_width=True)
        else:
            st.caption("Nenhuma palavra para exibir.")

    csv_text = distribution_to_csv(result)
    st.download_button(
        "Exportar CSV",
        data=csv_text,
        file_name=export_filename(result.question_key, prefix=DISTRIBUTION_PREFIX),
        mime="text/csv",
        disabled=not csv_text,
    )


def _render_comparison(
    selection: SelectedQuestion,
    records: pd.DataFrame,
    demographics: List[DemographicDescriptor],
    weight_field: str,
    normalizer: Optional[Normalizer] = None,
) -> None:
    with st.expander("Comparações demográficas", expanded=False):
        if not demographics:
            st.caption("Dados demográficos não estão disponíveis para esta pesquisa.")
            return

        keys = [d.key for d in demographics]
        default_key = next((k for k in COMPARISON_DEFAULT_KEYS if k in keys), keys[0])
        labels = {d.key: d.label for d in demographics}
        dem_key = st.selectbox(
            "Comparar por",
            options=keys,
            index=keys.index(default_key),
            format_func=lambda k: labels.get(k, k),
            key="comparison_demographic",
        )
        descriptor = next(d for d in demographics if d.key == dem_key)
        values = st.multiselect(
            f"Grupos de {descriptor.label.lower()}",
            options=list(descriptor.values),
            default=list(descriptor.values[:2]),
            key=f"comparison_values_{dem_key}",
        )

        result = compare_demographic(
            records,
            selection.key,
            dem_key,
            values=values,
            demographics=demographics,
            weight_field=weight_field,
            normalizer=normalizer,
        )
        if not result.rows:
            st.caption(f"Selecione pelo menos um grupo de {descriptor.label.lower()} para visualizar os dados.")
            return

        frame = pd.DataFrame(result.to_records()).set_index("answer")
        st.bar_chart(frame, horizontal=True, stack=False)
        st.download_button(
            "Exportar CSV",
            data=comparison_to_csv(result, selection.label),
            file_name=export_filename(selection.key, suffix=f"por-{dem_key}"),
            mime="text/csv",
            key=f"comparison_download_{dem_key}",
        )


def _render_profile(records: pd.DataFrame, weight_field: str) -> None:
    keys = [k for k in PROFILE_KEYS if k in records.columns]
    if not keys:
        return
    with st.expander("Perfil da amostra", expanded=False):
        for key in keys:
            rows = demographic_profile(records, key, weight_field=weight_field)
            st.write(key)
            st.dataframe(
                pd.DataFrame([{"valor": r.response, "percentual": r.percentage} for r in rows]),
                use_container_width=True,
            )


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def run_app() -> None:
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    st.set_page_config(page_title=APP_NAME, page_icon="📊", layout="wide")
    st.title(APP_NAME)
    st.caption(f"Versão {APP_VERSION}")

    try:
        with st.spinner("Carregando dados das pesquisas..."):
            data = _load_data()
    except DataLoaderError as err:
        logger.error("Dashboard data load failed: %s", err)
        st.error("Não foi possível carregar os dados. Por favor, tente novamente mais tarde.")
        st.text_area("Traceback", value=traceback.format_exc(), height=220)
        return

    selection = _render_question_selector(data)
    filters = _render_demographic_filters(data.demographics)
    regions = _render_region_filter(data)
    if selection is None:
        return
    normalizer = _render_grouping_toggle(selection, data)

    st.subheader(selection.label)

    if selection.kind is SelectionKind.HISTORIC:
        date_range = _render_date_range(data.surveys)
        result = run_selection(
            selection,
            data.surveys,
            data.responses,
            filters=filters,
            date_range=date_range,
            demographics=data.demographics,
            groups=data.question_groups,
            regions=regions,
            weight_field=data.weight_field,
            normalizer=normalizer,
        )
        if isinstance(result, TimeSeriesResult):
            _render_time_series(result)
        _render_wave_comparison(selection, data, filters, regions, normalizer)
        return

    survey = find_survey_for_selection(selection, data.surveys)
    records = data.records_for(survey.id) if survey is not None else pd.DataFrame()
    filtered = apply_region_filter(apply_demographic_filters(records, filters, data.demographics), regions)

    result = run_selection(
        selection,
        data.surveys,
        data.responses,
        filters=filters,
        demographics=data.demographics,
        groups=data.question_groups,
        regions=regions,
        weight_field=data.weight_field,
        normalizer=normalizer,
    )
    if isinstance(result, DistributionResult):
        _render_distribution(result, filtered, data.weight_field, normalizer)

    _render_comparison(selection, apply_region_filter(records, regions), data.demographics, data.weight_field, normalizer)
    _render_profile(filtered, data.weight_field)
