# core/template_engine.py
"""
Email Template Engine for review notifications
Renders Jinja2 templates with autoescaping, inlines CSS for email clients and
derives a plain-text alternative when no text template exists
"""

import re
from html import unescape
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Union

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateNotFound, select_autoescape
from jinja2.exceptions import TemplateError, UndefinedError, TemplateSyntaxError
import bleach
import premailer
from bs4 import BeautifulSoup

# Configure logging
logger = logging.getLogger(__name__)

DEFAULT_TEMPLATES_DIR = Path(__file__).resolve().parent / 'email_templates'


@dataclass
class RenderedEmail:
    """Rendered HTML and plain-text bodies"""
    html: str
    text: str
    inline_css_applied: bool = False


class ReviewTemplateEngine:
    """
    Template engine for the review emails

    Templates live in one directory as ``<name>.html`` with an optional
    ``<name>.txt`` companion. Undefined variables are errors, never blanks.
    """

    def __init__(self,
                 templates_dir: Optional[Union[str, Path]] = None,
                 enable_css_inlining: bool = True):
        self.templates_dir = Path(templates_dir) if templates_dir else DEFAULT_TEMPLATES_DIR
        self.enable_css_inlining = enable_css_inlining

        self.env = Environment(
            loader=FileSystemLoader(str(self.templates_dir)),
            autoescape=select_autoescape(['html', 'xml']),
            undefined=StrictUndefined,  # Fail on undefined variables
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self.env.filters['stars'] = self._stars_filter
        self.env.filters['plain'] = self._plain_filter

        logger.info(f"ReviewTemplateEngine initialized from {self.templates_dir}")

    def render(self, name: str, variables: Dict[str, Any]) -> RenderedEmail:
        """
        Render the ``name`` template pair

        Raises:
            TemplateError: missing template, undefined variable or syntax error
        """
        try:
            html = self.env.get_template(f"{name}.html").render(**variables)
            text = self._render_text(name, variables)
        except UndefinedError as e:
            raise TemplateError(f"Template variable error in {name}: {str(e)}")
        except TemplateSyntaxError as e:
            raise TemplateError(f"Template syntax error in {name}: {str(e)}")

        inline_applied = False
        if self.enable_css_inlining:
            inlined = self._inline_css(html)
            inline_applied = inlined is not html
            html = inlined

        if text is None:
            text = self._html_to_text(html)

        logger.debug(f"Rendered email template {name} ({len(html.encode('utf-8')):,} bytes)")
        return RenderedEmail(html=html, text=text, inline_css_applied=inline_applied)

    def _render_text(self, name: str, variables: Dict[str, Any]) -> Optional[str]:
        try:
            template = self.env.get_template(f"{name}.txt")
        except TemplateNotFound:
            return None
        return template.render(**variables).strip() + '\n'

    def _inline_css(self, html_content: str) -> str:
        """
        Inline CSS styles for better email client compatibility
        """
        try:
            p = premailer.Premailer(
                html_content,
                remove_classes=False,  # Keep classes for fallback
                keep_style_tags=True,
                strip_important=False,
                external_styles=None,
                allow_network=False,  # Never fetch remote stylesheets
                disable_validation=True,
                cssutils_logging_level=logging.CRITICAL,
            )
            return p.transform()
        except Exception as e:
            logger.warning(f"CSS inlining failed: {str(e)}")
            return html_content

    def _html_to_text(self, html_content: str) -> str:
        """
        Convert HTML to plain text with proper formatting for email
        """
        if not html_content:
            return ""

        soup = BeautifulSoup(html_content, 'html.parser')
        for tag in soup(['style', 'script', 'head']):
            tag.decompose()

        for br in soup.find_all('br'):
            br.replace_with('\n')

        for p in soup.find_all('p'):
            p.insert_after('\n\n')

        for header in soup.find_all(['h1', 'h2', 'h3', 'h4', 'h5', 'h6']):
            header.insert_before('\n')
            header.insert_after('\n')

        for li in soup.find_all('li'):
            li.insert_before('- ')
            li.insert_after('\n')

        for link in soup.find_all('a', href=True):
            link_text = link.get_text()
            href = link['href']
            if href != link_text:
                link.replace_with(f"{link_text} ({href})")

        text = soup.get_text()
        text = re.sub(r'[ \t]+', ' ', text)
        text = re.sub(r'\n\s*\n', '\n\n', text)
        return text.strip()

    @staticmethod
    def _stars_filter(rating: Any) -> str:
        try:
            value = max(0, min(5, int(rating)))
        except (TypeError, ValueError):
            value = 0
        return '★' * value + '☆' * (5 - value)

    @staticmethod
    def _plain_filter(value: Any) -> str:
        if value is None:
            return ''
        return unescape(bleach.clean(str(value), tags=[], attributes={}, strip=True))
