import asyncio
import logging
from logging.handlers import RotatingFileHandler
from typing import Any, Awaitable, TypeVar

import streamlit as st

from salescoach.errors import InvalidInputError, SalesCoachError, SendFailedError
from salescoach.models import Identity, LeaderboardPeriod, MessageRole, Role, WeightScope, WeightVector
from salescoach.settings import get_settings
from salescoach.trainer import Phase, TrainerService, build_trainer_service

T = TypeVar("T")


def setup_client_logging() -> logging.Logger:
    settings = get_settings()
    logs_dir = settings.log_dir
    logs_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("salescoach")
    if logger.handlers:
        return logger

    logger.setLevel("DEBUG" if settings.debug else settings.log_level)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    fh = RotatingFileHandler(logs_dir / "client.log", maxBytes=2_000_000, backupCount=3)
    fh.setFormatter(fmt)
    logger.addHandler(fh)
    return logger


LOGGER = setup_client_logging()


def session_loop() -> asyncio.AbstractEventLoop:
    """One event loop per browser session; Redis connections and the trainer's lock live on it."""
    if "loop" not in st.session_state:
        st.session_state["loop"] = asyncio.new_event_loop()
    return st.session_state["loop"]


def run(coro: Awaitable[T]) -> T | None:
    """Run one trainer action to completion; errors become a visible notice."""
    try:
        return session_loop().run_until_complete(coro)
    except SendFailedError as e:
        st.error(f"Message not delivered, try again: {e.text!r}")
    except InvalidInputError as e:
        st.warning(str(e))
    except SalesCoachError as e:
        LOGGER.error("Trainer action failed: %s", e)
        st.error(str(e))
    return None


def get_service() -> TrainerService:
    if "trainer" not in st.session_state:
        service = session_loop().run_until_complete(build_trainer_service())
        run(service.load_personas())
        st.session_state["trainer"] = service
    return st.session_state["trainer"]


def metric_columns(values: dict[str, Any]) -> None:
    cols = st.columns(len(values))
    for col, (title, value) in zip(cols, values.items()):
        col.metric(title, round(value or 0.0, 1))


st.set_page_config(page_title="Sales Roleplay Trainer", page_icon="🎯", layout="wide")
st.title("Sales Roleplay Trainer")

trainer = get_service()
phase = trainer.machine.phase

with st.sidebar:
    st.subheader("Profile")
    with st.form("profile"):
        email = st.text_input("Email", value=trainer.identity.email if trainer.identity else "")
        name = st.text_input("Name", value=trainer.identity.display_name if trainer.identity else "")
        team = st.text_input("Team", value=(trainer.identity.team or "") if trainer.identity else "")
        role = st.selectbox("Role", [r.value for r in Role])
        if st.form_submit_button("Save profile"):
            saved = run(trainer.save_profile(Identity(email=email, display_name=name, team=team, role=Role(role))))
            if saved is not None:
                run(trainer.resume())
                st.rerun()

    st.markdown("---")
    st.subheader("Training")
    personas = {p.key: p.name for p in trainer.personas}
    persona_key = st.selectbox(
        "Persona", list(personas), format_func=lambda k: personas[k], disabled=not personas
    )
    if st.button("Start session", disabled=trainer.identity is None or phase is Phase.ACTIVE):
        if run(trainer.start_session(persona_key)) is not None:
            st.rerun()
    if st.button("Abandon session", disabled=phase is not Phase.ACTIVE):
        run(trainer.abandon_session())
        st.rerun()

    premium = trainer.premium
    if premium is not None:
        st.markdown("---")
        if premium.eligible:
            st.success(f"Premium unlocked (avg {premium.average:.1f})")
        else:
            st.info(premium.reason or f"Premium locked (avg {premium.average:.1f})")
        if premium.sample_size:
            st.caption(f"Average of your last {premium.sample_size} sessions")

chat, side = st.columns([2, 1])

with chat:
    session = trainer.session
    if session is None:
        st.caption("Start a session to begin the roleplay.")
    else:
        st.caption(
            f"{session.persona_key} · {session.status.value} · score {round(session.current_score or 0.0, 1)}"
        )
        for m in session.messages:
            with st.chat_message("user" if m.role is MessageRole.SELLER else "assistant"):
                st.markdown(m.text)

    prompt = st.chat_input("Your reply…", disabled=phase is not Phase.ACTIVE or trainer.machine.is_sending)
    if prompt:
        with st.chat_message("user"):
            st.markdown(prompt)
        if run(trainer.send_message(prompt)) is not None:
            st.rerun()

    if st.button("Finish session", disabled=phase is not Phase.ACTIVE):
        if run(trainer.finish_session()) is not None:
            st.rerun()

    metrics = trainer.state.last_metrics
    if metrics is not None:
        metric_columns(
            {
                "Rapport": metrics.rapport,
                "Discovery": metrics.discovery,
                "Objections": metrics.objection,
                "Closing": metrics.closing,
            }
        )

with side:
    st.subheader("History")
    if not trainer.history:
        st.caption("No finished sessions yet.")
    for h in trainer.history:
        when = h.created_at.strftime("%Y-%m-%d %H:%M") if h.created_at else "-"
        st.markdown(f"**{h.persona_key}** · {round(h.final_score, 1)} · {when}")

    st.subheader("Leaderboard")
    period = st.radio("Period", [p.value for p in LeaderboardPeriod], horizontal=True, index=1)
    if st.button("Refresh leaderboard"):
        run(trainer.refresh_leaderboard(LeaderboardPeriod(period)))
    for idx, row in enumerate(trainer.leaderboard, 1):
        st.markdown(f"#{idx} {row.seller_email} · {row.average_score} ({row.session_count} sessions)")

    if trainer.identity is not None:
        st.subheader("Scoring weights")
        w = trainer.weights
        with st.form("weights"):
            scope = st.selectbox("Scope", [s.value for s in WeightScope])
            rapport = st.number_input("Rapport", min_value=0.0, value=w.rapport, step=0.05)
            discovery = st.number_input("Discovery", min_value=0.0, value=w.discovery, step=0.05)
            objection = st.number_input("Objection", min_value=0.0, value=w.objection, step=0.05)
            closing = st.number_input("Closing", min_value=0.0, value=w.closing, step=0.05)
            if st.form_submit_button("Save weights"):
                chosen = WeightScope(scope)
                target = {
                    WeightScope.USER: trainer.identity.email,
                    WeightScope.TEAM: trainer.identity.team,
                    WeightScope.GLOBAL: None,
                }[chosen]
                vector = WeightVector(
                    rapport=rapport, discovery=discovery, objection=objection, closing=closing
                )
                if run(trainer.save_weights(chosen, target, vector)) is False:
                    st.error("Weights not saved")

st.caption(f"Backend: {trainer.backend_url}")
