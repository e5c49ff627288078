"""CV / cover-letter PDF rendering (fpdf2) and the CV + letter ZIP bundle."""

import io
import logging
import re
import zipfile

from fpdf import FPDF

from credits import CREDIT_COSTS, debit
from letter_service import normalise_lang, write_cover_letter_text

logger = logging.getLogger(__name__)

# Core PDF fonts only cover latin-1
_REPLACEMENTS = {
    '—': '-', '–': '-', '−': '-',
    '‘': "'", '’': "'", '“': '"', '”': '"',
    '\u2022': '-', '\u2026': '...', '\u00a0': ' ', '\u202f': ' ', '\u0153': 'oe',
}

_LABELS = {
    'fr': {'target': 'Poste recherché', 'job_link': "Lien de l'offre : ", 'profile': 'Profil',
           'skills': 'Compétences clés', 'tools': 'Outils', 'experience': 'Expériences professionnelles',
           'education': 'Formation', 'languages': 'Langues', 'interests': "Centres d'intérêt",
           'application': 'Candidature : {job} - {company}', 'job': 'poste', 'company': 'Entreprise'},
    'en': {'target': 'Target position', 'job_link': 'Job link: ', 'profile': 'Profile',
           'skills': 'Key skills', 'tools': 'Tools', 'experience': 'Experience',
           'education': 'Education', 'languages': 'Languages', 'interests': 'Interests',
           'application': 'Application for {job} - {company}', 'job': 'the position',
           'company': 'Company'},
}

_INK = (26, 31, 41)
_ACCENT = (20, 38, 115)


def _latin1(text) -> str:
    text = str(text or '')
    for src, dst in _REPLACEMENTS.items():
        text = text.replace(src, dst)
    return text.encode('latin-1', 'replace').decode('latin-1')


def _new_pdf(margin: float) -> FPDF:
    pdf = FPDF(format='A4')
    pdf.set_margins(margin, margin, margin)
    pdf.set_auto_page_break(auto=True, margin=margin)
    pdf.add_page()
    pdf.set_text_color(*_INK)
    return pdf


def _line(pdf: FPDF, text: str, size: float = 11, bold: bool = False) -> None:
    if not text:
        return
    pdf.set_font('Helvetica', 'B' if bold else '', size)
    pdf.multi_cell(0, size * 0.5, _latin1(text), new_x='LMARGIN', new_y='NEXT')


def _paragraphs(pdf: FPDF, text: str, size: float = 10) -> None:
    if not text:
        return
    pdf.set_font('Helvetica', '', size)
    for paragraph in re.split(r'\n{2,}', text.strip()):
        pdf.multi_cell(0, size * 0.5, _latin1(paragraph.strip()), new_x='LMARGIN', new_y='NEXT')
        pdf.ln(size * 0.3)


def _section(pdf: FPDF, title: str) -> None:
    pdf.ln(2)
    pdf.set_font('Helvetica', 'B', 11)
    pdf.set_text_color(*_ACCENT)
    pdf.cell(0, 6, _latin1(title), new_x='LMARGIN', new_y='NEXT')
    pdf.set_text_color(*_INK)


def _bullet(pdf: FPDF, text: str, size: float = 8.5) -> None:
    pdf.set_font('Helvetica', '', size)
    pdf.set_x(pdf.l_margin + 3)
    pdf.multi_cell(0, size * 0.5, _latin1(f'- {text}'), new_x='LMARGIN', new_y='NEXT')


# ---------------------------------------------------------------------------
# Renderers
# ---------------------------------------------------------------------------

def render_cv_pdf(profile: dict, target_job: str = '', lang: str = 'fr',
                  contract: str = '', job_link: str = '') -> bytes:
    """One-column A4 CV from a profile dict."""
    labels = _LABELS[normalise_lang(lang)]
    p = profile or {}
    pdf = _new_pdf(margin=18)

    _line(pdf, p.get('full_name') or '', 16, bold=True)
    _line(pdf, target_job or contract or p.get('headline') or labels['target'], 11)
    contact = [p.get(k) for k in ('email', 'phone', 'city', 'linkedin') if p.get(k)]
    if contact:
        _line(pdf, ' · '.join(contact), 9)
    if job_link:
        _line(pdf, labels['job_link'] + job_link, 8)
    pdf.ln(3)

    if p.get('summary'):
        _section(pdf, labels['profile'])
        _paragraphs(pdf, p['summary'], 9.5)

    skills = list(p.get('skills') or []) + list(p.get('soft_skills') or [])
    if skills:
        _section(pdf, labels['skills'])
        _paragraphs(pdf, ' · '.join(skills), 9)
    if p.get('tools'):
        _line(pdf, labels['tools'], 9.5, bold=True)
        _paragraphs(pdf, ' · '.join(p['tools']), 9)

    experiences = [e for e in (p.get('experiences') or []) if isinstance(e, dict)]
    if experiences:
        _section(pdf, labels['experience'])
        for exp in experiences:
            header = ' - '.join(x for x in (exp.get('role'), exp.get('company')) if x)
            _line(pdf, header, 10, bold=True)
            _line(pdf, exp.get('dates') or '', 8.5)
            for b in (exp.get('bullets') or [])[:4]:
                _bullet(pdf, b)
            pdf.ln(2)

    education = [e for e in (p.get('education') or []) if isinstance(e, dict)]
    if education:
        _section(pdf, labels['education'])
        for ed in education:
            header = ' - '.join(x for x in (ed.get('degree'), ed.get('school')) if x)
            _line(pdf, header, 9.5, bold=True)
            _line(pdf, ed.get('dates') or '', 8.5)
            pdf.ln(1)

    if p.get('languages'):
        _section(pdf, labels['languages'])
        _paragraphs(pdf, p['languages'], 9)

    if p.get('hobbies'):
        _section(pdf, labels['interests'])
        _paragraphs(pdf, ' · '.join(p['hobbies']), 9)

    return bytes(pdf.output())


def render_letter_pdf(cover_letter: str, job_title: str = '', company_name: str = '',
                      candidate_name: str = '', lang: str = 'fr') -> bytes:
    labels = _LABELS[normalise_lang(lang)]
    pdf = _new_pdf(margin=21)

    _line(pdf, candidate_name, 14, bold=True)
    if job_title or company_name:
        _line(pdf, labels['application'].format(job=job_title or labels['job'],
                                                company=company_name or labels['company']), 11)
    pdf.ln(6)
    _paragraphs(pdf, cover_letter, 11)
    return bytes(pdf.output())


def letter_filename(job_title: str = '', lang: str = 'fr') -> str:
    base = 'cover-letter' if normalise_lang(lang) == 'en' else 'lettre-motivation'
    slug = re.sub(r'[^a-z0-9]+', '-', (job_title or '').lower()).strip('-')
    return f'{base}-{slug}.pdf' if slug else f'{base}.pdf'


def build_zip(files: dict) -> bytes:
    """``{name: bytes}`` → ZIP archive bytes."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, 'w', zipfile.ZIP_DEFLATED) as zf:
        for name, data in files.items():
            zf.writestr(name, data)
    return buf.getvalue()


# ---------------------------------------------------------------------------
# Paid actions
# ---------------------------------------------------------------------------

def generate_cv_pdf(actor_id: str, actor_email: str | None, profile: dict,
                    target_job: str = '', lang: str = 'fr', contract: str = '',
                    job_link: str = '') -> tuple:
    """Charge one credit (doc type ``cv``) and render the CV. Returns (pdf_bytes, balance)."""
    if not isinstance(profile, dict) or not profile:
        raise ValueError('profile is required')
    balance = debit(actor_id, actor_email, CREDIT_COSTS['cv_pdf'],
                    action='generate_document', doc_type='cv',
                    metadata={'tool': 'cv_pdf', 'target_job': target_job, 'lang': lang})
    return render_cv_pdf(profile, target_job, lang, contract, job_link), balance


def generate_cv_letter_zip(actor_id: str, actor_email: str | None, profile: dict,
                           target_job: str = '', lang: str = 'fr', contract: str = '',
                           job_link: str = '', job_description: str = '',
                           letter_options: dict | None = None) -> tuple:
    """CV PDF + AI cover letter PDF in one ZIP. Returns (zip_bytes, balance)."""
    if not isinstance(profile, dict) or not profile:
        raise ValueError('profile is required')
    lm = letter_options or {}
    company_name = lm.get('company_name') or ''
    job_title = lm.get('job_title') or target_job or ''
    lm_lang = normalise_lang(lm.get('lang') or lang)

    balance = debit(actor_id, actor_email, CREDIT_COSTS['cv_letter_zip'],
                    action='generate_document', doc_type='cv',
                    metadata={'tool': 'cv_letter_zip', 'target_job': target_job,
                              'company': company_name, 'lang': lm_lang})

    cv_pdf = render_cv_pdf(profile, target_job, lang, contract, job_link)
    letter = write_cover_letter_text(profile, job_title, company_name,
                                     lm.get('job_description') or job_description, lm_lang)
    letter_pdf = render_letter_pdf(letter, job_title, company_name,
                                   profile.get('full_name') or '', lm_lang)

    letter_name = 'cover-letter.pdf' if lm_lang == 'en' else 'lettre-motivation.pdf'
    logger.info('Built CV + letter bundle for %s (%d + %d bytes)',
                actor_id, len(cv_pdf), len(letter_pdf))
    return build_zip({'cv-ia.pdf': cv_pdf, letter_name: letter_pdf}), balance
