"""AI Mock Interview Service: in-memory session tracker + LLM orchestration.

Sessions live in process memory only (SessionStore). A restart loses every
active interview; that is accepted. Each start/answer turn reserves one
credit through credits.debit *before* the LLM call, and the turn stays
charged even when the model output has to be replaced by a fallback.
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field

from credits import CREDIT_COSTS, debit
from llm_service import ParsedOk, _ensure_str, generate_json
from profile_service import build_profile_context
from token_budget import get_date_context, truncate_cv, truncate_history, truncate_jd

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Question count by interview mode
# ---------------------------------------------------------------------------

QUESTION_PLAN = {
    'complet': 8,
    'rapide': 4,
    'technique': 6,
    'comportemental': 6,
}
DEFAULT_MODE = 'complet'

_MODE_LABELS = {
    'fr': {
        'complet': 'entretien complet (général + motivation + compétences)',
        'rapide': 'entretien flash (questions essentielles)',
        'technique': 'entretien focalisé sur les compétences techniques',
        'comportemental': 'entretien focalisé sur les soft skills / situations',
    },
    'en': {
        'complet': 'full interview (background + motivation + skills)',
        'rapide': 'quick interview (essential questions only)',
        'technique': 'technical skills interview',
        'comportemental': 'behavioural interview (soft skills / situations)',
    },
}

_FALLBACKS = {
    'fr': {
        'opening_for_job': ("Bonjour ! Pour commencer, pouvez-vous vous présenter et m'expliquer "
                            "pourquoi vous ciblez le poste de {job_title} ?"),
        'opening': 'Bonjour ! Pour commencer, pouvez-vous vous présenter en quelques phrases ?',
        'question': ('Merci pour ta réponse. Peux-tu me donner un exemple encore plus concret '
                     'en lien avec ce poste ?'),
        'closing': "Merci pour tes réponses, l'entretien est terminé.",
        'analysis': 'Mode dégradé sans analyse IA détaillée (erreur ou quota Gemini).',
        'summary': ("Mode dégradé : le bilan détaillé n'a pas pu être généré car l'API IA "
                    "n'était pas disponible."),
    },
    'en': {
        'opening_for_job': ('Hello! To start, could you introduce yourself and explain why you are '
                            'applying for the {job_title} position?'),
        'opening': 'Hello! To start, could you introduce yourself in a few sentences?',
        'question': ('Thanks for your answer. Could you give a more concrete example related '
                     'to this position?'),
        'closing': 'Thank you for your answers, the interview is over.',
        'analysis': 'Degraded mode: no detailed AI analysis (Gemini error or quota).',
        'summary': ('Degraded mode: the detailed assessment could not be generated because '
                    'the AI service was unavailable.'),
    },
}


def normalise_lang(lang) -> str:
    return 'en' if str(lang or '').lower().startswith('en') else 'fr'


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class SessionNotFoundError(LookupError):
    """Unknown or expired interview session."""


class SessionForbiddenError(PermissionError):
    """The session belongs to another user."""


class SessionClosedError(Exception):
    """The session already reached its final verdict."""


# ---------------------------------------------------------------------------
# Session state
# ---------------------------------------------------------------------------

@dataclass
class Turn:
    role: str           # interviewer | candidate
    text: str
    created_at: float = field(default_factory=time.time)
    analysis: str | None = None

    def to_dict(self) -> dict:
        return {
            'role': self.role,
            'text': self.text,
            'analysis': self.analysis,
            'created_at': self.created_at,
        }


@dataclass
class InterviewSession:
    session_id: str
    owner_id: str
    job_title: str = ''
    job_desc: str = ''
    cv_summary: str = ''
    mode: str = DEFAULT_MODE
    difficulty: str = 'standard'
    lang: str = 'fr'
    total_questions: int = QUESTION_PLAN[DEFAULT_MODE]
    status: str = 'active'
    current_step: int = 1
    history: list = field(default_factory=list)
    score: int | None = None
    summary: str | None = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def is_active(self) -> bool:
        return self.status == 'active'

    def add_turn(self, role: str, text: str, analysis: str | None = None) -> Turn:
        turn = Turn(role=role, text=text, analysis=analysis)
        self.history.append(turn)
        self.updated_at = turn.created_at
        return turn

    def complete(self, summary: str, score: int | None) -> None:
        self.status = 'completed'
        self.summary = summary
        self.score = score
        self.updated_at = time.time()

    def to_dict(self) -> dict:
        return {
            'session_id': self.session_id,
            'status': self.status,
            'job_title': self.job_title,
            'mode': self.mode,
            'difficulty': self.difficulty,
            'lang': self.lang,
            'step': self.current_step,
            'total_questions': self.total_questions,
            'history': [t.to_dict() for t in self.history],
            'final_score': self.score,
            'final_summary': self.summary,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
        }


class SessionStore:
    """Process-local session map with an inactivity TTL, swept on access."""

    def __init__(self, ttl_seconds: int = 2 * 60 * 60):
        self.ttl_seconds = ttl_seconds
        self._sessions: dict[str, InterviewSession] = {}
        self._lock = threading.Lock()

    def __len__(self):
        with self._lock:
            return len(self._sessions)

    def _sweep_locked(self, now: float) -> int:
        expired = [sid for sid, s in self._sessions.items()
                   if now - s.updated_at > self.ttl_seconds]
        for sid in expired:
            del self._sessions[sid]
        if expired:
            logger.info('Dropped %d idle interview session(s)', len(expired))
        return len(expired)

    def sweep(self, now: float | None = None) -> int:
        with self._lock:
            return self._sweep_locked(now if now is not None else time.time())

    def put(self, session: InterviewSession) -> None:
        with self._lock:
            self._sweep_locked(time.time())
            self._sessions[session.session_id] = session

    def get(self, session_id: str) -> InterviewSession | None:
        with self._lock:
            self._sweep_locked(time.time())
            return self._sessions.get(session_id)

    def clear(self) -> None:
        with self._lock:
            self._sessions.clear()


_store = SessionStore()


def get_store() -> SessionStore:
    return _store


def init_app(app) -> None:
    _store.ttl_seconds = app.config.get('INTERVIEW_SESSION_TTL_SECONDS', _store.ttl_seconds)


# ---------------------------------------------------------------------------
# Prompt builder
# ---------------------------------------------------------------------------

_SYSTEM_FR = """Tu es un recruteur humain expérimenté qui mène un entretien d'embauche en FRANÇAIS.
{date_context}

Intitulé du poste : {job_title}
Contexte / description du poste : {job_desc}
Profil du candidat : {cv_summary}

Mode d'entretien : {mode_label}.
Niveau de difficulté : {difficulty}.
Tu mènes un entretien structuré avec environ {total} questions maximum.

RÈGLES :
- Pose UNE seule question à la fois, courte et adaptée au poste.
- Tant que l'étape est < {total} : analyse très brièvement la dernière réponse puis pose la question suivante.
- À l'étape {total} ou après : fais un bilan (points forts / axes d'amélioration) et donne un score global sur 100.

Ta RÉPONSE DOIT être STRICTEMENT un objet JSON valide, sans texte autour :
{{"next_question": "string ou null", "short_analysis": "string", "final_summary": "string ou null", "final_score": nombre ou null}}"""

_SYSTEM_EN = """You are an experienced human recruiter conducting a job interview in ENGLISH.
{date_context}

Job title: {job_title}
Job context / description: {job_desc}
Candidate profile: {cv_summary}

Interview mode: {mode_label}.
Difficulty: {difficulty}.
Run a structured interview of about {total} questions at most.

RULES:
- Ask ONE question at a time, short and relevant to the position.
- While the step is < {total}: briefly analyse the last answer, then ask the next question.
- At step {total} or later: give an assessment (strengths / areas to improve) and an overall score out of 100.

Your ANSWER MUST be STRICTLY a valid JSON object with no surrounding text:
{{"next_question": "string or null", "short_analysis": "string", "final_summary": "string or null", "final_score": number or null}}"""


def build_messages(session: InterviewSession, step: int) -> list:
    """Build the chat transcript sent to the model for the given step."""
    lang = session.lang
    template = _SYSTEM_EN if lang == 'en' else _SYSTEM_FR
    unknown = '(not specified)' if lang == 'en' else '(non précisé)'
    system = template.format(
        date_context=get_date_context(),
        job_title=session.job_title or unknown,
        job_desc=truncate_jd(session.job_desc, 'interview') or unknown,
        cv_summary=truncate_cv(session.cv_summary, 'interview') or unknown,
        mode_label=_MODE_LABELS[lang].get(session.mode, session.mode),
        difficulty=session.difficulty,
        total=session.total_questions,
    )

    messages = [{'role': 'system', 'content': system}]
    if not session.history:
        opener = ('[The interview begins. Ask your first question.]' if lang == 'en'
                  else "[L'entretien commence. Pose ta première question.]")
        messages.append({'role': 'user', 'content': opener})

    for turn in truncate_history(session.history):
        role = 'assistant' if turn.role == 'interviewer' else 'user'
        messages.append({'role': role, 'content': turn.text})

    if lang == 'en':
        note = f'[Step {step} of {session.total_questions}.]'
    else:
        note = f"[Nous en sommes à l'étape {step} sur {session.total_questions}.]"
    messages.append({'role': 'user', 'content': note})
    return messages


# ---------------------------------------------------------------------------
# Model reply interpretation
# ---------------------------------------------------------------------------

def _coerce_score(value) -> int | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        score = int(round(float(value)))
    except (TypeError, ValueError):
        return None
    return max(0, min(100, score))


def read_reply(result) -> dict:
    """Turn a tagged LLM result into the four interview fields (empty on fallback)."""
    reply = {'next_question': None, 'short_analysis': '',
             'final_summary': None, 'final_score': None}
    if not isinstance(result, ParsedOk):
        return reply
    data = result.data
    reply['next_question'] = _ensure_str(data.get('next_question')) or None
    reply['short_analysis'] = _ensure_str(data.get('short_analysis'))
    reply['final_summary'] = _ensure_str(data.get('final_summary')) or None
    reply['final_score'] = _coerce_score(data.get('final_score'))
    return reply


def _turn_payload(session: InterviewSession, reply: dict, balance: int, fallback: bool) -> dict:
    return {
        'session_id': session.session_id,
        'status': session.status,
        'step': session.current_step,
        'total_questions': session.total_questions,
        'next_question': reply['next_question'],
        'short_analysis': reply['short_analysis'],
        'final_summary': reply['final_summary'],
        'final_score': reply['final_score'],
        'is_final': not session.is_active,
        'fallback': fallback,
        'credits': balance,
    }


# ---------------------------------------------------------------------------
# Start Interview
# ---------------------------------------------------------------------------

def start_interview(actor_id: str, actor_email: str | None, job_title: str = '',
                    job_desc: str = '', cv_summary: str = '', mode: str = DEFAULT_MODE,
                    difficulty: str = 'standard', lang: str = 'fr') -> dict:
    """Charge one turn, open a session at step 1 and ask the first question."""
    mode = mode if mode in QUESTION_PLAN else DEFAULT_MODE
    lang = normalise_lang(lang)

    balance = debit(actor_id, actor_email, CREDIT_COSTS['interview_turn'],
                    action='interview_turn', doc_type='other',
                    metadata={'tool': 'interview', 'step': 1, 'job_title': job_title})

    session = InterviewSession(
        session_id=uuid.uuid4().hex,
        owner_id=actor_id,
        job_title=(job_title or '').strip(),
        job_desc=job_desc or '',
        cv_summary=cv_summary or '',
        mode=mode,
        difficulty=difficulty or 'standard',
        lang=lang,
        total_questions=QUESTION_PLAN[mode],
    )

    reply = read_reply(generate_json(build_messages(session, 1), task='interview'))
    fallback = not reply['next_question']
    if fallback:
        texts = _FALLBACKS[lang]
        reply['next_question'] = (texts['opening_for_job'].format(job_title=session.job_title)
                                  if session.job_title else texts['opening'])
        reply['short_analysis'] = reply['short_analysis'] or texts['analysis']
    # A brand-new session never carries a verdict
    reply['final_summary'] = None
    reply['final_score'] = None

    session.add_turn('interviewer', reply['next_question'], analysis=reply['short_analysis'])
    _store.put(session)

    logger.info('Interview %s started for %s (mode=%s, lang=%s, fallback=%s)',
                session.session_id, actor_id, mode, lang, fallback)
    return _turn_payload(session, reply, balance, fallback)


# ---------------------------------------------------------------------------
# Process Answer & Get Next Question
# ---------------------------------------------------------------------------

def get_session(actor_id: str, session_id: str) -> InterviewSession:
    """Return the caller's session or raise SessionNotFoundError / SessionForbiddenError."""
    session = _store.get(session_id) if session_id else None
    if session is None:
        raise SessionNotFoundError(session_id)
    if session.owner_id != actor_id:
        raise SessionForbiddenError(session_id)
    return session


def answer(actor_id: str, actor_email: str | None, session_id: str,
           message: str, step=None) -> dict:
    """Record the candidate's answer, charge the turn and produce the next interviewer turn."""
    message = (message or '').strip()
    if not message:
        raise ValueError('message is required')

    session = get_session(actor_id, session_id)
    with session.lock:
        if not session.is_active:
            raise SessionClosedError(session_id)

        if isinstance(step, int) and not isinstance(step, bool):
            next_step = step
        else:
            next_step = session.current_step + 1

        balance = debit(actor_id, actor_email, CREDIT_COSTS['interview_turn'],
                        action='interview_turn', doc_type='other',
                        metadata={'tool': 'interview', 'session_id': session_id,
                                  'step': next_step})

        session.add_turn('candidate', message)
        session.current_step = next_step

        reply = read_reply(generate_json(build_messages(session, next_step), task='interview'))
        is_last_step = next_step >= session.total_questions
        fallback = not reply['next_question'] and not reply['final_summary']
        if fallback:
            texts = _FALLBACKS[session.lang]
            if is_last_step:
                reply['next_question'] = texts['closing']
                reply['final_summary'] = texts['summary']
            else:
                reply['next_question'] = texts['question']
                reply['short_analysis'] = reply['short_analysis'] or texts['analysis']

        if reply['next_question']:
            session.add_turn('interviewer', reply['next_question'],
                             analysis=reply['short_analysis'])
        if reply['final_summary']:
            session.complete(reply['final_summary'], reply['final_score'])
            logger.info('Interview %s completed at step %d (score=%s)',
                        session_id, next_step, session.score)
        else:
            reply['final_score'] = None

        if fallback:
            logger.warning('Interview %s step %d answered with fallback', session_id, next_step)
        return _turn_payload(session, reply, balance, fallback)


# ---------------------------------------------------------------------------
# Interview Q&A for one CV experience
# ---------------------------------------------------------------------------

def fallback_questions(lang: str, role: str, company: str, city: str = '',
                       dates: str = '', bullets=None) -> list:
    missions = [b for b in (bullets or []) if isinstance(b, str)][:3]
    where = ''
    if lang == 'en':
        where += f' in {city}' if city else ''
        where += f' ({dates})' if dates else ''
        return [
            {'question': f'Can you describe your role as {role} at {company}?',
             'answer': (f'In my position as {role} at {company}{where}, I was responsible for '
                        f'{missions[0] if missions else "several key tasks related to this role"}.')},
            {'question': 'Tell me about a concrete achievement in this role.',
             'answer': (f'One strong achievement was: {missions[1]}' if len(missions) > 1 else
                        'One of my main achievements was delivering key tasks with measurable impact.')},
            {'question': 'Which tools or technologies did you use most often?',
             'answer': (f'I regularly used tools/technologies such as {missions[2]}.' if len(missions) > 2 else
                        'I used the main tools and workflows of the role on a daily basis.')},
        ]

    where += f' à {city}' if city else ''
    where += f' ({dates})' if dates else ''
    return [
        {'question': f'Pouvez-vous me décrire votre rôle de {role} chez {company} ?',
         'answer': (f"Dans ce poste de {role} chez {company}{where}, j'étais principalement en charge de "
                    f"{missions[0] if missions else 'plusieurs missions clés en lien avec le poste'}.")},
        {'question': "Parlez-moi d'une réalisation concrète dont vous êtes fier(e).",
         'answer': (f'Une réalisation marquante : {missions[1]}' if len(missions) > 1 else
                    "Une de mes réalisations majeures a eu un impact positif mesurable sur l'équipe.")},
        {'question': 'Quels outils ou technologies utilisiez-vous le plus souvent ?',
         'answer': (f"J'utilisais notamment {missions[2]} au quotidien." if len(missions) > 2 else
                    "J'utilisais au quotidien les principaux outils liés à ce poste.")},
    ]


def _read_qa(result) -> list | None:
    if not isinstance(result, ParsedOk):
        return None
    items = result.data.get('questions')
    if not isinstance(items, list):
        return None
    pairs = []
    for item in items:
        if not isinstance(item, dict):
            continue
        q = _ensure_str(item.get('question') or item.get('q'))
        a = _ensure_str(item.get('answer') or item.get('a'))
        if q and a:
            pairs.append({'question': q, 'answer': a})
    return pairs[:3] if len(pairs) >= 3 else None


def generate_interview_qa(actor_id: str, actor_email: str | None, profile: dict,
                          experience_index, lang: str = 'fr') -> dict:
    """Three likely interview questions (with model answers) about one CV experience."""
    lang = normalise_lang(lang)
    experiences = profile.get('experiences') if isinstance(profile, dict) else None
    if not isinstance(experiences, list) or not experiences:
        raise ValueError('profile.experiences is required')
    try:
        idx = int(experience_index)
    except (TypeError, ValueError):
        raise ValueError('experience_index must be an integer')
    if idx < 0 or idx >= len(experiences) or not isinstance(experiences[idx], dict):
        raise ValueError('experience_index out of range')

    exp = experiences[idx]
    role = _ensure_str(exp.get('role') or exp.get('title'), 'Role' if lang == 'en' else 'Poste')
    company = _ensure_str(exp.get('company'))
    city = _ensure_str(exp.get('city') or exp.get('location'))
    dates = _ensure_str(exp.get('dates'))
    bullets = exp.get('bullets') if isinstance(exp.get('bullets'), list) else []

    balance = debit(actor_id, actor_email, CREDIT_COSTS['interview_qa'],
                    action='generate_document', doc_type='other',
                    metadata={'tool': 'interview_qa', 'role': role, 'company': company})

    context = truncate_cv(build_profile_context(profile), 'interview_qa')
    missions = ' '.join(b for b in bullets if isinstance(b, str))
    if lang == 'en':
        prompt = f"""You are an interview coach.
Return STRICTLY a JSON object {{"questions": [...]}} holding EXACTLY 3 objects {{"question": "string", "answer": "string"}}.

Context:
- Role: {role} — {company} — {city} — {dates}
- Missions: {missions}
- Candidate profile:
{context}"""
    else:
        prompt = f"""Tu es un coach d'entretien.
Retourne STRICTEMENT un objet JSON {{"questions": [...]}} contenant EXACTEMENT 3 objets {{"question": "string", "answer": "string"}}.

Contexte :
- {role} — {company} — {city} — {dates}
- Missions : {missions}
- Profil candidat :
{context}"""

    questions = _read_qa(generate_json(prompt, task='interview_qa'))
    fallback = questions is None
    if fallback:
        logger.warning('Interview Q&A for %s fell back to template questions', actor_id)
        questions = fallback_questions(lang, role, company, city, dates, bullets)
    return {'questions': questions, 'lang': lang, 'fallback': fallback, 'credits': balance}
