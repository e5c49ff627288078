"""Profile extraction, cover letters and PDF / ZIP rendering."""

import io
import zipfile

import pytest

import letter_service
import profile_service
from credits import InsufficientCreditsError, get_balance, usage_history
from letter_service import fallback_letter_and_pitch, generate_letter_and_pitch
from llm_service import ParsedFallback, ParsedOk
from pdf_service import (build_zip, generate_cv_letter_zip, generate_cv_pdf, letter_filename,
                         render_cv_pdf, render_letter_pdf)
from profile_service import (allowed_file, build_profile_context, extract_profile,
                             heuristic_profile, normalise_profile)

PROFILE = normalise_profile({
    'full_name': 'Léa Dubois',
    'headline': 'Chargée de communication',
    'email': 'lea@example.com',
    'city': 'Nantes',
    'summary': 'Communicante “terrain” — 5 ans d’expérience.',
    'skills': ['Rédaction', 'SEO', 'seo'],
    'tools': ['Canva', 'SEO'],
    'experiences': [{'title': 'Chargée de com', 'company': 'Ville de Nantes',
                     'dates': '2019-2024', 'bullets': ['Refonte du site', 'Newsletter']}],
    'education': [{'degree': 'Master', 'institution': 'Université de Nantes'}],
    'languages': 'Français, Anglais (B2)',
})


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------


def test_normalise_profile_dedupes_and_renames():
    assert PROFILE['skills'] == ['Rédaction', 'SEO']
    assert PROFILE['tools'] == ['Canva']
    assert PROFILE['experiences'][0]['role'] == 'Chargée de com'
    assert PROFILE['education'][0]['school'] == 'Université de Nantes'
    assert normalise_profile('junk')['experiences'] == []


def test_profile_context_mentions_experience():
    context = build_profile_context(PROFILE)
    assert 'Chargée de com at Ville de Nantes' in context
    assert 'Skills: Rédaction, SEO, Canva' in context


def test_heuristic_profile_finds_contact_details():
    text = 'Jean Dupont\nDéveloppeur Python\njean.dupont@mail.fr\n+33 6 12 34 56 78\nlinkedin.com/in/jdupont'
    profile = heuristic_profile(text)
    assert profile['full_name'] == 'Jean Dupont'
    assert profile['email'] == 'jean.dupont@mail.fr'
    assert profile['linkedin'] == 'linkedin.com/in/jdupont'


@pytest.mark.parametrize('name,ok', [('cv.pdf', True), ('CV.DOCX', True), ('cv.txt', True),
                                     ('cv.exe', False), ('cv', False)])
def test_allowed_file(name, ok):
    assert allowed_file(name) is ok


def test_extract_profile_from_model(ctx, make_user, monkeypatch):
    make_user('u1', credits=1)
    monkeypatch.setattr(profile_service, 'generate_json',
                        lambda prompt, task, **kw: ParsedOk(data={'full_name': 'Jean',
                                                                  'skills': ['Python']}))

    result = extract_profile('u1', None, 'Jean\nPython developer')

    assert result['fallback'] is False
    assert result['profile']['skills'] == ['Python']
    assert result['credits'] == 0


def test_extract_profile_falls_back_to_heuristics(ctx, make_user, monkeypatch):
    make_user('u1', credits=1)
    monkeypatch.setattr(profile_service, 'generate_json',
                        lambda prompt, task, **kw: ParsedFallback(reason='upstream_error'))

    result = extract_profile('u1', None, 'Jean Dupont\nDev\njean@mail.fr')

    assert result['fallback'] is True
    assert result['profile']['email'] == 'jean@mail.fr'
    assert get_balance('u1').credits == 0


def test_extract_profile_empty_text_not_charged(ctx, make_user):
    make_user('u1', credits=1)
    with pytest.raises(ValueError):
        extract_profile('u1', None, '   ')
    assert get_balance('u1').credits == 1


# ---------------------------------------------------------------------------
# Letters
# ---------------------------------------------------------------------------


def test_letter_from_model(ctx, make_user, monkeypatch):
    make_user('u1', credits=2)
    monkeypatch.setattr(letter_service, 'generate_json',
                        lambda prompt, task, **kw: ParsedOk(data={'cover_letter': 'Madame...',
                                                                  'pitch': 'Je suis Léa.'}))

    result = generate_letter_and_pitch('u1', None, PROFILE, job_title='Community manager',
                                       company_name='Acme')

    assert result == {'cover_letter': 'Madame...', 'pitch': 'Je suis Léa.', 'lang': 'fr',
                      'fallback': False, 'credits': 1}
    entry = usage_history('u1')[0]
    assert entry.doc_type == 'lm'
    assert get_balance('u1').total_lm_generated == 1


def test_letter_partial_reply_is_completed_from_template(ctx, make_user, monkeypatch):
    make_user('u1', credits=2)
    monkeypatch.setattr(letter_service, 'generate_json',
                        lambda prompt, task, **kw: ParsedOk(data={'cover_letter': 'Dear team'}))

    result = generate_letter_and_pitch('u1', None, PROFILE, job_title='PM', lang='en')

    assert result['fallback'] is True
    assert result['cover_letter'] == 'Dear team'
    assert result['pitch']


def test_letter_requires_title_or_description(ctx, make_user):
    make_user('u1', credits=2)
    with pytest.raises(ValueError):
        generate_letter_and_pitch('u1', None, PROFILE)
    assert get_balance('u1').credits == 2


def test_letter_without_credits(ctx, make_user):
    make_user('u1', credits=0)
    with pytest.raises(InsufficientCreditsError):
        generate_letter_and_pitch('u1', None, PROFILE, job_title='PM')


def test_fallback_letter_uses_profile():
    fb = fallback_letter_and_pitch(PROFILE, 'Chargée de projet', 'Acme', 'fr')
    assert 'Chargée de projet' in fb['cover_letter']
    assert fb['cover_letter'].endswith('Léa Dubois\nNantes')
    assert fb['pitch'] == PROFILE['summary']


# ---------------------------------------------------------------------------
# PDF / ZIP
# ---------------------------------------------------------------------------


def test_render_cv_pdf_handles_non_latin_punctuation():
    pdf = render_cv_pdf(PROFILE, target_job='Chargée de communication', lang='fr')
    assert pdf.startswith(b'%PDF')


def test_render_letter_pdf():
    pdf = render_letter_pdf('Dear team,\n\nI am “keen”.\n\nBest', 'PM', 'Acme', 'Alex', 'en')
    assert pdf.startswith(b'%PDF')


def test_letter_filename():
    assert letter_filename('Data Analyst (H/F)', 'fr') == 'lettre-motivation-data-analyst-h-f.pdf'
    assert letter_filename('', 'en') == 'cover-letter.pdf'


def test_build_zip_contains_files():
    data = build_zip({'a.txt': b'a', 'b.txt': b'b'})
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        assert sorted(zf.namelist()) == ['a.txt', 'b.txt']


def test_generate_cv_pdf_charges_cv_document(ctx, make_user):
    make_user('u1', credits=1)

    pdf, balance = generate_cv_pdf('u1', None, PROFILE, target_job='Com')

    assert pdf.startswith(b'%PDF')
    assert balance == 0
    record = get_balance('u1')
    assert record.total_cv_generated == 1
    assert record.total_documents_generated == 1


def test_cv_letter_zip_costs_two_credits(ctx, make_user, monkeypatch):
    make_user('u1', credits=3)
    monkeypatch.setattr(letter_service, 'complete',
                        lambda prompt, response_format='json', task='unknown', system=None:
                        '```\nMadame, Monsieur,\n\nBonjour.\n```')

    data, balance = generate_cv_letter_zip('u1', None, PROFILE, target_job='Com',
                                           letter_options={'company_name': 'Acme'})

    assert balance == 1
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        assert sorted(zf.namelist()) == ['cv-ia.pdf', 'lettre-motivation.pdf']
        assert zf.read('cv-ia.pdf').startswith(b'%PDF')


def test_cv_letter_zip_when_model_is_down(ctx, make_user):
    make_user('u1', credits=2)
    data, balance = generate_cv_letter_zip('u1', None, PROFILE, lang='en',
                                           letter_options={'lang': 'en'})
    assert balance == 0
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        assert 'cover-letter.pdf' in zf.namelist()
