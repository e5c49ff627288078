"""CV upload → text → structured candidate profile.

The profile dict is the shared currency of the letter, PDF and interview
services:

    {full_name, headline, email, phone, linkedin, city, summary,
     skills: [..], soft_skills: [..], tools: [..],
     experiences: [{role, company, city, dates, bullets: [..]}],
     education: [{degree, school, dates}],
     certs, languages, hobbies: [..]}
"""

import logging
import os
import re
import tempfile

from werkzeug.utils import secure_filename

from credits import CREDIT_COSTS, debit
from llm_service import ParsedOk, _ensure_list, _ensure_str, generate_json
from token_budget import get_date_context, truncate_cv

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {'pdf', 'docx', 'txt'}


def allowed_file(filename: str) -> bool:
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in ALLOWED_EXTENSIONS


# ---------------------------------------------------------------------------
# File extraction helpers
# ---------------------------------------------------------------------------

def extract_text_from_file(filepath: str) -> str:
    ext = filepath.rsplit('.', 1)[-1].lower()
    if ext == 'pdf':
        return _extract_pdf(filepath)
    elif ext == 'docx':
        return _extract_docx(filepath)
    elif ext == 'txt':
        with open(filepath, 'r', encoding='utf-8', errors='ignore') as f:
            return f.read()
    raise ValueError(f'Unsupported file type: {ext}')


def _extract_pdf(filepath: str) -> str:
    import pdfplumber
    text_parts = []
    with pdfplumber.open(filepath) as pdf:
        for page in pdf.pages:
            page_text = page.extract_text()
            if page_text:
                text_parts.append(page_text)
    return '\n'.join(text_parts)


def _extract_docx(filepath: str) -> str:
    from docx import Document
    doc = Document(filepath)
    return '\n'.join(para.text for para in doc.paragraphs if para.text.strip())


def extract_text_from_upload(file) -> str:
    """Save an uploaded werkzeug FileStorage to a temp dir, extract, clean up."""
    if not file or not file.filename or not allowed_file(file.filename):
        raise ValueError('Upload a .pdf, .docx or .txt file')
    filename = secure_filename(file.filename) or 'cv.txt'
    if '.' not in filename:
        filename = f'cv.{file.filename.rsplit(".", 1)[1].lower()}'
    with tempfile.TemporaryDirectory() as tmp_dir:
        temp_path = os.path.join(tmp_dir, filename)
        file.save(temp_path)
        return extract_text_from_file(temp_path)


# ---------------------------------------------------------------------------
# Profile context for prompts
# ---------------------------------------------------------------------------

def build_profile_context(profile: dict) -> str:
    """Flatten a profile into the plain-text block used inside prompts."""
    p = profile or {}
    skills = _ensure_list(p.get('skills')) + _ensure_list(p.get('tools'))
    experiences = [e for e in (p.get('experiences') or []) if isinstance(e, dict)]
    education = [e for e in (p.get('education') or []) if isinstance(e, dict)]

    exp_lines = []
    for e in experiences:
        bullets = ' '.join(_ensure_list(e.get('bullets')))
        exp_lines.append(f"{e.get('role') or e.get('title') or ''} at {e.get('company') or ''} "
                         f"({e.get('dates') or ''}): {bullets}".strip())
    edu_lines = [f"{e.get('degree') or ''} - {e.get('school') or ''} ({e.get('dates') or ''})"
                 for e in education]

    return '\n'.join([
        f"Name: {p.get('full_name') or ''}",
        f"Headline: {p.get('headline') or ''}",
        f"Contact: {p.get('email') or ''} | {p.get('phone') or ''} | "
        f"{p.get('linkedin') or ''} | {p.get('city') or ''}",
        f"Summary: {p.get('summary') or ''}",
        f"Skills: {', '.join(skills)}",
        'Experience:',
        ';\n'.join(exp_lines),
        'Education:',
        ';\n'.join(edu_lines),
        f"Certifications: {p.get('certs') or ''}",
        f"Languages: {p.get('languages') or ''}",
    ]).strip()


# ---------------------------------------------------------------------------
# Normalisation
# ---------------------------------------------------------------------------

def _dedupe(items: list) -> list:
    seen = set()
    out = []
    for item in items:
        key = item.lower()
        if key in seen:
            continue
        seen.add(key)
        out.append(item)
    return out


def normalise_profile(raw: dict) -> dict:
    """Coerce an untrusted profile dict (model output or client JSON) to the known shape."""
    raw = raw if isinstance(raw, dict) else {}

    experiences = []
    for e in raw.get('experiences') or []:
        if not isinstance(e, dict):
            continue
        experiences.append({
            'role': _ensure_str(e.get('role') or e.get('title')),
            'company': _ensure_str(e.get('company')),
            'city': _ensure_str(e.get('city') or e.get('location')),
            'dates': _ensure_str(e.get('dates')),
            'bullets': _ensure_list(e.get('bullets')),
        })

    education = []
    for e in raw.get('education') or []:
        if not isinstance(e, dict):
            continue
        education.append({
            'degree': _ensure_str(e.get('degree') or e.get('title')),
            'school': _ensure_str(e.get('school') or e.get('institution')),
            'dates': _ensure_str(e.get('dates')),
        })

    skills = _dedupe([s.strip() for s in _ensure_list(raw.get('skills')) if s.strip()])
    skill_keys = {s.lower() for s in skills}
    tools = [t for t in _dedupe([t.strip() for t in _ensure_list(raw.get('tools')) if t.strip()])
             if t.lower() not in skill_keys]

    return {
        'full_name': _ensure_str(raw.get('full_name')),
        'headline': _ensure_str(raw.get('headline')),
        'email': _ensure_str(raw.get('email')),
        'phone': _ensure_str(raw.get('phone')),
        'linkedin': _ensure_str(raw.get('linkedin')),
        'city': _ensure_str(raw.get('city')),
        'summary': _ensure_str(raw.get('summary')),
        'skills': skills,
        'soft_skills': _dedupe([s.strip() for s in _ensure_list(raw.get('soft_skills')) if s.strip()]),
        'tools': tools,
        'experiences': experiences,
        'education': education,
        'certs': _ensure_str(raw.get('certs')),
        'languages': _ensure_str(raw.get('languages')),
        'hobbies': _ensure_list(raw.get('hobbies')),
    }


_EMAIL_RE = re.compile(r'[\w.+-]+@[\w-]+(?:\.[\w-]+)+')
_PHONE_RE = re.compile(r'(?:\+\d{1,3}[\s.-]?)?(?:\(?\d{1,4}\)?[\s.-]?){3,5}\d{2,4}')
_LINKEDIN_RE = re.compile(r'(?:https?://)?(?:[a-z]{2,3}\.)?linkedin\.com/in/[\w%-]+/?', re.IGNORECASE)


def heuristic_profile(cv_text: str) -> dict:
    """Best-effort profile from raw text when the model is unavailable."""
    lines = [ln.strip() for ln in (cv_text or '').splitlines() if ln.strip()]
    email = _EMAIL_RE.search(cv_text or '')
    phone = _PHONE_RE.search(cv_text or '')
    linkedin = _LINKEDIN_RE.search(cv_text or '')
    return normalise_profile({
        'full_name': lines[0][:80] if lines else '',
        'headline': lines[1][:120] if len(lines) > 1 else '',
        'email': email.group(0) if email else '',
        'phone': phone.group(0).strip() if phone else '',
        'linkedin': linkedin.group(0) if linkedin else '',
        'summary': ' '.join(lines[2:8])[:600],
    })


# ---------------------------------------------------------------------------
# Profile extraction (LLM)
# ---------------------------------------------------------------------------

_PROFILE_SYSTEM_TEMPLATE = """You are a CV parsing JSON API. Extract a structured candidate profile.
{date_context}

RULES:
- Output a single valid JSON object. json.loads() must succeed.
- Only use facts present in the CV. Never invent employers, dates or degrees.
- Keep the CV's language for free-text fields."""

_PROFILE_SCHEMA = ('{"full_name":"","headline":"","email":"","phone":"","linkedin":"","city":"",'
                   '"summary":"2-3 sentences","skills":["hard skills"],"soft_skills":[""],'
                   '"tools":["software / tools"],"experiences":[{"role":"","company":"","city":"",'
                   '"dates":"","bullets":["achievement"]}],"education":[{"degree":"","school":"",'
                   '"dates":""}],"certs":"","languages":"e.g. French (native), English (C1)",'
                   '"hobbies":[""]}')


def extract_profile(actor_id: str, actor_email: str | None, cv_text: str) -> dict:
    """Charge one credit, then turn CV text into a profile. Falls back to heuristics."""
    cv_text = (cv_text or '').strip()
    if not cv_text:
        raise ValueError('No text could be extracted from the CV')

    balance = debit(actor_id, actor_email, CREDIT_COSTS['profile_extract'],
                    action='generate_document', doc_type='other',
                    metadata={'tool': 'profile_extract', 'chars': len(cv_text)})

    prompt = f"""Extract the candidate profile from this CV.

<CV>
{truncate_cv(cv_text, 'profile_extract')}
</CV>

Return JSON:
{_PROFILE_SCHEMA}"""
    result = generate_json(prompt, task='profile_extract',
                           system=_PROFILE_SYSTEM_TEMPLATE.format(date_context=get_date_context()))

    if isinstance(result, ParsedOk):
        profile = normalise_profile(result.data)
        fallback = False
    else:
        logger.warning('Profile extraction for %s fell back to heuristics (%s)',
                       actor_id, result.reason)
        profile = heuristic_profile(cv_text)
        fallback = True
    return {'profile': profile, 'fallback': fallback, 'credits': balance}
