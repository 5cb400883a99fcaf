"""
Campaign Renderer
=================

Turns a campaign's content blocks (JSON) into the HTML and plain-text bodies
handed to the transport. Per-recipient values are substituted into
``{{VAR}}`` placeholders and outgoing links are tagged with UTM parameters.

Block types:
    heading   {text, subtitle}
    paragraph {content}            (**bold** and *italic* supported)
    article   {title, summary, link, published_at}
    button    {text, url}
    divider   {}
"""

import re
import html as html_lib
import logging
from urllib.parse import quote

from mailroom.core import get_setting

logger = logging.getLogger(__name__)

DEFAULT_STYLE = {
    'bg': '#f4f4f1',
    'card_bg': '#ffffff',
    'header_bg': '#1f2933',
    'header_text': '#ffffff',
    'text': '#1f2933',
    'muted': '#616e7c',
    'border': '#d9dee3',
    'btn_bg': '#1f2933',
    'btn_text': '#ffffff',
    'font': "Helvetica, Arial, sans-serif",
}

_PLACEHOLDER = re.compile(r'\{\{([A-Z0-9_]+)\}\}')


def _get_style():
    style = dict(DEFAULT_STYLE)
    style.update(get_setting('EMAIL_STYLE', None) or {})
    return style


def _get_brand():
    website = (get_setting('EMAIL_WEBSITE_URL', '') or '').rstrip('/')
    return {
        'name': get_setting('EMAIL_BRAND_NAME', 'Newsletter'),
        'url': website or '#',
        'unsubscribe_url': website + '/api/subscribers/unsubscribe',
    }


def resolve_variables(subscriber):
    """Per-recipient placeholder values.

    Built-in: {{EMAIL}}, {{UNSUBSCRIBE_URL}}. Extra resolvers may be supplied
    through the CAMPAIGN_VARIABLES setting as ``{name: callable(subscriber)}``.
    """
    email = subscriber.get('email', '')
    brand = _get_brand()
    variables = {
        'EMAIL': email,
        'UNSUBSCRIBE_URL': f"{brand['unsubscribe_url']}?email={quote(email)}",
    }

    for key, resolver in (get_setting('CAMPAIGN_VARIABLES', None) or {}).items():
        if not callable(resolver):
            continue
        try:
            variables[key] = resolver(subscriber)
        except Exception as e:
            logger.error(f"Variable {key} could not be resolved for {email}: {e}")

    return variables


def substitute(text, variables):
    """Replace known {{VAR}} placeholders; unknown ones are left as written"""
    if not text:
        return text or ''
    return _PLACEHOLDER.sub(
        lambda m: str(variables[m.group(1)]) if m.group(1) in variables else m.group(0),
        text
    )


def _inline_markup(text):
    text = re.sub(r'\*\*(.*?)\*\*', r'<strong>\1</strong>', text)
    return re.sub(r'\*(.*?)\*', r'<em>\1</em>', text)


def render_block(block, style, variables):
    kind = block.get('type', 'paragraph')
    font = style['font']

    def field(name, default=''):
        return html_lib.escape(substitute(block.get(name, default), variables), quote=False)

    if kind == 'heading':
        subtitle = field('subtitle')
        subtitle_html = (
            f'<p style="margin:6px 0 0;font-size:13px;opacity:0.8;font-family:{font};">{subtitle}</p>'
            if subtitle else ''
        )
        return (
            f'<div style="background:{style["header_bg"]};color:{style["header_text"]};'
            f'padding:24px;text-align:center;">'
            f'<p style="margin:0;font-size:22px;font-family:{font};">{field("text")}</p>{subtitle_html}</div>'
        )

    if kind == 'paragraph':
        return (
            f'<p style="margin:0 0 16px;font-size:16px;line-height:1.6;color:{style["text"]};'
            f'font-family:{font};">{_inline_markup(field("content"))}</p>'
        )

    if kind == 'article':
        link = substitute(block.get('link', '#'), variables)
        published = field('published_at')
        meta = f'<p style="margin:0 0 4px;font-size:12px;color:{style["muted"]};">{published}</p>' if published else ''
        return (
            f'<div style="border-bottom:1px solid {style["border"]};padding:12px 0;font-family:{font};">'
            f'{meta}'
            f'<p style="margin:0 0 6px;font-size:18px;"><a href="{link}" style="color:{style["text"]};">'
            f'{field("title")}</a></p>'
            f'<p style="margin:0;font-size:15px;color:{style["muted"]};">{field("summary")}</p></div>'
        )

    if kind == 'button':
        url = substitute(block.get('url', '#'), variables)
        return (
            f'<p style="text-align:center;margin:24px 0;"><a href="{url}" target="_blank" '
            f'style="display:inline-block;background:{style["btn_bg"]};color:{style["btn_text"]};'
            f'padding:12px 24px;text-decoration:none;font-weight:bold;font-family:{font};">'
            f'{field("text", "Read more")}</a></p>'
        )

    if kind == 'divider':
        return f'<hr style="border:none;border-top:1px solid {style["border"]};margin:16px 0;" />'

    logger.warning(f"Skipping unknown block type: {kind}")
    return ''


def add_utm_params(html, campaign_name):
    """Append utm_* parameters to every http(s) href"""
    if not campaign_name:
        return html
    slug = re.sub(r'[^a-z0-9]+', '-', campaign_name.lower()).strip('-')

    def tag(match):
        url = match.group(1)
        if not url.startswith(('http://', 'https://')) or 'utm_source=' in url:
            return match.group(0)
        joiner = '&' if '?' in url else '?'
        return f'href="{url}{joiner}utm_source=newsletter&utm_medium=email&utm_campaign={slug}"'

    return re.sub(r'href="([^"]+)"', tag, html)


def render_campaign(campaign, variables=None):
    """Full HTML document for one recipient"""
    variables = variables or {}
    style = _get_style()
    brand = _get_brand()
    blocks = campaign.get('blocks') or []

    header = ''.join(render_block(b, style, variables) for b in blocks if b.get('type') == 'heading')
    body = '\n'.join(render_block(b, style, variables) for b in blocks if b.get('type') != 'heading')
    unsubscribe_url = variables.get('UNSUBSCRIBE_URL', brand['unsubscribe_url'])

    document = f'''<!DOCTYPE html>
<html lang="en">
<head><meta charset="utf-8"><title>{html_lib.escape(campaign.get('subject') or brand['name'])}</title></head>
<body style="margin:0;padding:0;background:{style['bg']};">
  <div style="max-width:600px;margin:0 auto;padding:24px;font-family:{style['font']};">
    <div style="background:{style['card_bg']};border:1px solid {style['border']};">
      {header}
      <div style="padding:28px;">
{body}
      </div>
      <div style="padding:16px;text-align:center;font-size:12px;color:{style['muted']};border-top:1px solid {style['border']};">
        <p style="margin:0;">{html_lib.escape(brand['name'])}</p>
        <p style="margin:4px 0 0;"><a href="{unsubscribe_url}" style="color:{style['muted']};">Unsubscribe</a></p>
      </div>
    </div>
  </div>
</body>
</html>'''

    return add_utm_params(document, campaign.get('name'))


def render_text(campaign, variables=None):
    """Plain-text alternative body"""
    variables = variables or {}
    lines = []
    for block in campaign.get('blocks') or []:
        kind = block.get('type', 'paragraph')
        if kind == 'heading':
            lines += [substitute(block.get('text', ''), variables).upper(), '']
        elif kind == 'paragraph':
            lines += [substitute(block.get('content', ''), variables), '']
        elif kind == 'article':
            lines += [
                substitute(block.get('title', ''), variables),
                substitute(block.get('summary', ''), variables),
                substitute(block.get('link', ''), variables),
                '',
            ]
        elif kind == 'button':
            lines += [f"{substitute(block.get('text', ''), variables)}: {substitute(block.get('url', ''), variables)}", '']
        elif kind == 'divider':
            lines += ['-' * 40, '']

    unsubscribe_url = variables.get('UNSUBSCRIBE_URL', _get_brand()['unsubscribe_url'])
    lines.append(f"Unsubscribe: {unsubscribe_url}")
    return '\n'.join(lines)


def render_for_recipient(campaign, subscriber):
    """(subject, html, text) ready for the transport"""
    variables = resolve_variables(subscriber)
    subject = substitute(campaign.get('subject') or campaign.get('name') or '', variables)
    return subject, render_campaign(campaign, variables), render_text(campaign, variables)
