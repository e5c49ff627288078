"""Cover letter + elevator pitch generation (Gemini, with a template fallback)."""

import logging

from credits import CREDIT_COSTS, debit
from llm_service import ParsedOk, _ensure_str, complete, generate_json
from profile_service import build_profile_context
from token_budget import get_date_context, truncate_cv, truncate_jd

logger = logging.getLogger(__name__)


def normalise_lang(lang) -> str:
    return 'en' if str(lang or '').lower().startswith('en') else 'fr'


# ---------------------------------------------------------------------------
# Template fallback
# ---------------------------------------------------------------------------

def fallback_letter_and_pitch(profile: dict, job_title: str, company_name: str,
                              lang: str = 'fr') -> dict:
    """Deterministic letter + pitch built only from the profile fields."""
    p = profile or {}
    name = p.get('full_name') or ''
    city = p.get('city') or ''
    summary = p.get('summary') or ''
    experiences = [e for e in (p.get('experiences') or []) if isinstance(e, dict)]
    first = experiences[0] if experiences else {}
    role = first.get('role') or ''
    company = first.get('company') or ''
    domain = p.get('headline') or ''
    signature = name + (f'\n{city}' if city else '')

    if lang == 'en':
        pitch = summary or (f"I am {name or 'a candidate'} with solid experience in "
                            f"{domain or 'my field'}, motivated by the {job_title or 'role'} "
                            f"at {company_name or 'your company'}.")
        letter = (f"Dear {company_name or 'Hiring Manager'},\n\n"
                  f"I am writing to express my interest in the position of "
                  f"{job_title or 'your advertised role'}. With solid experience in "
                  f"{domain or 'my field'}, I have developed strong skills relevant to this "
                  f"opportunity.\n\n"
                  f"In my previous experience at {company or 'my last company'}, I contributed to "
                  f"projects with measurable impact and collaborated with different stakeholders.\n\n"
                  f"I would be delighted to discuss how I can contribute to your team.\n\n"
                  f"Best regards,\n{signature}")
        return {'cover_letter': letter.strip(), 'pitch': pitch}

    pitch = summary or (f"Je suis {name or 'un(e) candidat(e)'} avec une solide expérience"
                        f"{' dans ' + domain if domain else ''}, motivé(e) par le poste de "
                        f"{job_title or 'votre poste'} chez {company_name or 'votre entreprise'}.")
    letter = (f"Madame, Monsieur,\n\n"
              f"Je vous écris pour vous faire part de mon intérêt pour le poste de "
              f"{job_title or '...'} au sein de {company_name or 'votre entreprise'}. "
              f"Avec une expérience significative {'dans ' + domain if domain else 'dans mon domaine'}, "
              f"j'ai développé des compétences solides en "
              f"{role or 'gestion de projets, collaboration et suivi des objectifs'}.\n\n"
              f"Je serais ravi(e) d'échanger plus en détail lors d'un entretien.\n\n"
              f"Je vous prie d'agréer, Madame, Monsieur, l'expression de mes salutations "
              f"distinguées.\n\n{signature}")
    return {'cover_letter': letter.strip(), 'pitch': pitch}


# ---------------------------------------------------------------------------
# LLM generation
# ---------------------------------------------------------------------------

_LETTER_SYSTEM_TEMPLATE = """You are a career coach writing application material.
{date_context}

RULES:
- Use only facts from the candidate profile. Never invent employers, degrees or figures.
- Write in {language}.
- The cover letter is 3-4 short paragraphs with a greeting and a sign-off.
- The pitch is 2-3 sentences the candidate can say out loud."""


def _language_name(lang: str) -> str:
    return 'ENGLISH' if lang == 'en' else 'FRENCH'


def write_letter_and_pitch(profile: dict, job_title: str = '', company_name: str = '',
                           job_description: str = '', lang: str = 'fr') -> dict:
    """Ask the model for a letter + pitch; any missing part comes from the template."""
    context = truncate_cv(build_profile_context(profile), 'letter')
    prompt = f"""Write a cover letter and an elevator pitch for "{job_title or 'the role'}" at "{company_name or 'the company'}".

<CANDIDATE_PROFILE>
{context}
</CANDIDATE_PROFILE>

<JOB_DESCRIPTION>
{truncate_jd(job_description, 'letter') or '—'}
</JOB_DESCRIPTION>

Return JSON: {{"cover_letter":"string","pitch":"string"}}"""

    system = _LETTER_SYSTEM_TEMPLATE.format(date_context=get_date_context(),
                                            language=_language_name(lang))
    result = generate_json(prompt, task='letter', system=system)

    letter = pitch = ''
    if isinstance(result, ParsedOk):
        letter = _ensure_str(result.data.get('cover_letter') or result.data.get('coverLetter'))
        pitch = _ensure_str(result.data.get('pitch'))

    fallback = not letter or not pitch
    if fallback:
        fb = fallback_letter_and_pitch(profile, job_title, company_name, lang)
        letter = letter or fb['cover_letter']
        pitch = pitch or fb['pitch']
        logger.warning('Letter/pitch for %r used the template fallback', job_title)
    return {'cover_letter': letter, 'pitch': pitch, 'lang': lang, 'fallback': fallback}


def write_cover_letter_text(profile: dict, job_title: str = '', company_name: str = '',
                            job_description: str = '', lang: str = 'fr') -> str:
    """Plain-text letter body only (used for the CV + letter bundle)."""
    context = truncate_cv(build_profile_context(profile), 'letter')
    prompt = f"""Produce ONLY a professional cover letter in {_language_name(lang)} for "{job_title or 'the role'}" at "{company_name or 'the company'}".
Return ONLY the letter body as plain text.

CANDIDATE PROFILE:
{context}

JOB DESCRIPTION:
{truncate_jd(job_description, 'letter') or '—'}"""

    try:
        text = complete(prompt, response_format='text', task='letter').strip()
    except RuntimeError as e:
        logger.error('Cover letter generation failed, using template: %s', e)
        text = ''
    if text.startswith('```'):
        lines = text.split('\n')[1:]
        if lines and lines[-1].strip() == '```':
            lines = lines[:-1]
        text = '\n'.join(lines).strip()
    return text or fallback_letter_and_pitch(profile, job_title, company_name, lang)['cover_letter']


def generate_letter_and_pitch(actor_id: str, actor_email: str | None, profile: dict,
                              job_title: str = '', company_name: str = '',
                              job_description: str = '', lang: str = 'fr') -> dict:
    """Charge one credit (doc type ``lm``), then write the letter + pitch."""
    if not isinstance(profile, dict) or not profile:
        raise ValueError('profile is required')
    if not (job_title or '').strip() and not (job_description or '').strip():
        raise ValueError('Provide at least a job title or a job description')
    lang = normalise_lang(lang)

    balance = debit(actor_id, actor_email, CREDIT_COSTS['letter'],
                    action='generate_document', doc_type='lm',
                    metadata={'tool': 'letter_pitch', 'job_title': job_title,
                              'company': company_name, 'lang': lang})

    result = write_letter_and_pitch(profile, job_title, company_name, job_description, lang)
    result['credits'] = balance
    return result
