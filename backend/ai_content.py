"""
Cost-optimized AI content generation
Gemini first (cheapest), OpenAI as fallback, templates when neither answers
"""

import os
import re
import math
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests

from http_client import get_http_session
from monitoring import track_ai_generation

logger = logging.getLogger(__name__)

GEMINI_MODEL = 'gemini-1.5-flash'
GEMINI_URL = f"https://generativelanguage.googleapis.com/v1beta/models/{GEMINI_MODEL}:generateContent"
OPENAI_MODEL = 'gpt-3.5-turbo'
OPENAI_URL = 'https://api.openai.com/v1/chat/completions'

# USD per 1K tokens
GEMINI_COST_PER_1K = 0.00025
OPENAI_COST_PER_1K = 0.002

DEFAULT_MAX_TOKENS = 300
DEFAULT_TEMPERATURE = 0.8
REQUEST_TIMEOUT = 30

MAX_PROMPT_LENGTH = 4000
MAX_TOPIC_LENGTH = 500

SYSTEM_PROMPT = """You are an expert social media content creator and marketing strategist.

FORMATTING RULES:
- Use clear, concise bullet points
- Keep each point under 15 words
- Focus on actionable, specific advice
- Use power words and emotional triggers"""

PLATFORM_HASHTAGS = {
    'instagram': ['#reels', '#instagood', '#explore'],
    'tiktok': ['#fyp', '#foryou', '#tiktokmademebuyit'],
    'youtube': ['#shorts', '#youtubeshorts'],
}
GENERIC_HASHTAGS = ['#viral', '#trending', '#musthave', '#smallbusiness', '#shopping']

# ==============================================================================
# TEMPLATES
# ==============================================================================

HOOK_TEMPLATE = """• "You won't believe what happened when I tried this..."
• "The secret that changed everything about my business"
• "This one trick completely transformed my results"
• "Everyone's doing this wrong - here's the right way"
• "I tested this for 30 days and here's what happened\""""

SCRIPT_TEMPLATE = """0-3s: Hook - Start with your strongest, most attention-grabbing claim
3-8s: Problem - Identify the specific pain point your audience faces
8-15s: Solution - Present your product as the answer
15-25s: Proof - Show results, testimonials, or demonstrations
25-30s: Call to Action - Tell viewers exactly what to do next"""

VISUAL_TEMPLATE = """Visual Suggestions:
• High-quality close-up shots with dynamic lighting
• Authentic behind-the-scenes content
• Before/after transformation sequences

Audio Suggestions:
• Upbeat background music (120-140 BPM)
• Clear, confident voiceover with strategic pauses
• Trending audio clips relevant to your niche"""

GUIDELINE_TEMPLATE = """Strategic Guidelines for Maximum Engagement:
• Post during peak hours (6-9 PM) for maximum visibility
• Use trending sounds and hashtags relevant to your niche
• Keep content under 60 seconds for better retention
• Respond to comments within the first hour
• Cross-promote across multiple platforms"""

GENERIC_TEMPLATE = """Strategic recommendations:
• Focus on creating authentic, value-driven content
• Use compelling hooks to capture attention in the first 3 seconds
• Include clear calls-to-action to drive engagement
• Optimize for your specific platform and audience
• Test different approaches and measure results"""

# First matching keyword group wins
TEMPLATE_RULES = [
    (('hook', 'attention'), HOOK_TEMPLATE),
    (('script', 'structure'), SCRIPT_TEMPLATE),
    (('visual', 'audio'), VISUAL_TEMPLATE),
    (('guideline', 'strategy'), GUIDELINE_TEMPLATE),
]


def sanitize_input(text: str, max_length: int = 500) -> str:
    """Remove HTML tags and control characters, normalize whitespace"""
    if not text:
        return ""
    clean = re.sub(r'<[^>]+>', '', str(text))
    clean = re.sub(r'[<>\\]', '', clean)
    clean = ' '.join(clean.split())
    return clean[:max_length].strip()


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text or '') / 4)


def select_template(prompt: str) -> str:
    lowered = prompt.lower()
    for keywords, template in TEMPLATE_RULES:
        if any(k in lowered for k in keywords):
            return template
    return GENERIC_TEMPLATE

# ==============================================================================
# PROVIDER CHAIN
# ==============================================================================

@dataclass
class GenerationRequest:
    prompt: str
    max_tokens: int = DEFAULT_MAX_TOKENS
    temperature: float = DEFAULT_TEMPERATURE
    system_prompt: Optional[str] = None


class ProviderError(Exception):
    pass


class CostOptimizedAI:
    """AI generation with the cheapest available provider"""

    def __init__(self, gemini_api_key: str = None, openai_api_key: str = None):
        self.gemini_api_key = gemini_api_key if gemini_api_key is not None else os.getenv('GEMINI_API_KEY', '')
        self.openai_api_key = openai_api_key if openai_api_key is not None else os.getenv('OPENAI_API_KEY', '')
        self._lock = threading.Lock()
        self.reset_stats()

    @property
    def gemini_available(self) -> bool:
        return bool(self.gemini_api_key)

    @property
    def openai_available(self) -> bool:
        return bool(self.openai_api_key)

    @track_ai_generation
    def generate_content(self, request: GenerationRequest) -> Dict[str, Any]:
        """Returns {content, provider, tokens_used, cost, success}"""
        with self._lock:
            self._stats['total_requests'] += 1

        if self.gemini_available:
            try:
                result = self._generate_with_gemini(request)
                saved = (OPENAI_COST_PER_1K - GEMINI_COST_PER_1K) * result['tokens_used'] / 1000
                self._record('gemini_requests', result['cost'], saved)
                return result
            except (requests.RequestException, ProviderError) as e:
                logger.warning(f"[AI] Gemini failed, falling back to OpenAI: {e}")

        if self.openai_available:
            try:
                result = self._generate_with_openai(request)
                self._record('openai_requests', result['cost'])
                return result
            except (requests.RequestException, ProviderError) as e:
                logger.warning(f"[AI] OpenAI failed, using template fallback: {e}")

        self._record('fallback_requests', 0.0)
        return self._generate_fallback(request)

    def _record(self, counter: str, cost: float, saved: float = 0.0):
        with self._lock:
            self._stats[counter] += 1
            self._stats['total_cost'] += cost
            self._stats['cost_saved'] += saved

    def _generate_with_gemini(self, request: GenerationRequest) -> Dict[str, Any]:
        prompt = request.prompt
        if request.system_prompt:
            prompt = f"{request.system_prompt}\n\nUser: {request.prompt}"

        response = get_http_session().post(
            GEMINI_URL,
            params={'key': self.gemini_api_key},
            json={
                'contents': [{'role': 'user', 'parts': [{'text': prompt}]}],
                'generationConfig': {
                    'maxOutputTokens': request.max_tokens,
                    'temperature': request.temperature,
                },
            },
            timeout=REQUEST_TIMEOUT
        )
        response.raise_for_status()

        try:
            parts = response.json()['candidates'][0]['content']['parts']
        except (KeyError, IndexError, ValueError) as e:
            raise ProviderError(f"Unexpected Gemini response: {e}")
        content = ''.join(p.get('text', '') for p in parts).strip()
        if not content:
            raise ProviderError('Empty Gemini response')

        tokens = estimate_tokens(content)
        return {
            'content': content,
            'provider': 'gemini',
            'tokens_used': tokens,
            'cost': tokens / 1000 * GEMINI_COST_PER_1K,
            'success': True
        }

    def _generate_with_openai(self, request: GenerationRequest) -> Dict[str, Any]:
        messages = []
        if request.system_prompt:
            messages.append({'role': 'system', 'content': request.system_prompt})
        messages.append({'role': 'user', 'content': request.prompt})

        response = get_http_session().post(
            OPENAI_URL,
            headers={
                'Authorization': f"Bearer {self.openai_api_key}",
                'Content-Type': 'application/json'
            },
            json={
                'model': OPENAI_MODEL,
                'messages': messages,
                'max_tokens': request.max_tokens,
                'temperature': request.temperature,
            },
            timeout=REQUEST_TIMEOUT
        )
        response.raise_for_status()

        try:
            data = response.json()
            content = (data['choices'][0]['message']['content'] or '').strip()
        except (KeyError, IndexError, ValueError) as e:
            raise ProviderError(f"Unexpected OpenAI response: {e}")
        if not content:
            raise ProviderError('Empty OpenAI response')

        tokens = (data.get('usage') or {}).get('total_tokens') or estimate_tokens(content)
        return {
            'content': content,
            'provider': 'openai',
            'tokens_used': tokens,
            'cost': tokens / 1000 * OPENAI_COST_PER_1K,
            'success': True
        }

    def _generate_fallback(self, request: GenerationRequest) -> Dict[str, Any]:
        content = select_template(request.prompt)
        return {
            'content': content,
            'provider': 'fallback',
            'tokens_used': estimate_tokens(content),
            'cost': 0.0,
            'success': True
        }

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            stats = dict(self._stats)
        total = stats['total_requests']
        stats['average_cost_per_request'] = stats['total_cost'] / total if total else 0.0
        stats['gemini_usage_percent'] = stats['gemini_requests'] / total * 100 if total else 0.0
        stats['providers'] = {'gemini': self.gemini_available, 'openai': self.openai_available}
        return stats

    def reset_stats(self):
        with self._lock:
            self._stats = {
                'total_requests': 0,
                'gemini_requests': 0,
                'openai_requests': 0,
                'fallback_requests': 0,
                'total_cost': 0.0,
                'cost_saved': 0.0,
            }


_ai: Optional[CostOptimizedAI] = None
_ai_lock = threading.Lock()


def get_ai_service() -> CostOptimizedAI:
    global _ai
    if _ai is None:
        with _ai_lock:
            if _ai is None:
                _ai = CostOptimizedAI()
    return _ai

# ==============================================================================
# CONTENT HELPERS
# ==============================================================================

def _bullet_lines(content: str) -> List[str]:
    lines = []
    for line in content.splitlines():
        clean = re.sub(r'^\s*(?:[•\-*]|\d+[.)])\s*', '', line).strip().strip('"').strip()
        if clean and not clean.endswith(':'):
            lines.append(clean)
    return lines


def _topic_hashtags(topic: str) -> List[str]:
    words = re.findall(r'[a-zA-Z0-9]+', topic.lower())
    tags = [f"#{w}" for w in words if len(w) > 2]
    if len(words) > 1:
        tags.insert(0, '#' + ''.join(words))
    return tags


def generate_hooks(topic: str, platform: str = 'instagram', count: int = 5,
                   ai: CostOptimizedAI = None) -> List[str]:
    topic = sanitize_input(topic, MAX_TOPIC_LENGTH)
    ai = ai or get_ai_service()
    result = ai.generate_content(GenerationRequest(
        prompt=f"Write {count} attention-grabbing opening hooks for a {platform} video about: {topic}. "
               f"One hook per line.",
        system_prompt=SYSTEM_PROMPT
    ))

    hooks = _bullet_lines(result['content'])[:count]
    fillers = [
        f"You won't believe what {topic} can do in 60 seconds",
        f"The {topic} secret everyone's talking about",
        f"Stop scrolling if you care about {topic}",
        f"This {topic} hack will change your routine",
        f"I tried {topic} for 30 days - here's what happened",
    ]
    for filler in fillers:
        if len(hooks) >= count:
            break
        hooks.append(filler)
    return hooks[:count]


def generate_caption(topic: str, platform: str = 'instagram', tone: str = 'engaging',
                     ai: CostOptimizedAI = None) -> str:
    topic = sanitize_input(topic, MAX_TOPIC_LENGTH)
    tone = sanitize_input(tone, 50) or 'engaging'
    ai = ai or get_ai_service()
    result = ai.generate_content(GenerationRequest(
        prompt=f"Write a short {tone} {platform} caption (under 300 characters, no hashtags) for: {topic}",
        max_tokens=150,
        system_prompt=SYSTEM_PROMPT
    ))

    if result['provider'] == 'fallback':
        return f"{topic} - see why everyone is talking about it. Tap the link to shop now!"
    return result['content'].strip()[:300]


def suggest_hashtags(topic: str, platform: str = 'instagram', count: int = 10,
                     ai: CostOptimizedAI = None) -> List[str]:
    topic = sanitize_input(topic, MAX_TOPIC_LENGTH)
    ai = ai or get_ai_service()
    result = ai.generate_content(GenerationRequest(
        prompt=f"Suggest {count} {platform} hashtags for: {topic}. Output hashtags only.",
        max_tokens=100,
        system_prompt=SYSTEM_PROMPT
    ))

    tags = []
    candidates = (re.findall(r'#\w+', result['content'])
                  + _topic_hashtags(topic)
                  + PLATFORM_HASHTAGS.get(platform, [])
                  + GENERIC_HASHTAGS)
    for tag in candidates:
        tag = tag.lower()
        if tag not in tags:
            tags.append(tag)
    return tags[:count]


def get_content_suggestions(user_id: str, topic: str, platform: str = 'instagram',
                            ai: CostOptimizedAI = None) -> Dict[str, Any]:
    """Hooks, caption and hashtags for one topic"""
    ai = ai or get_ai_service()
    logger.info(f"[AI] Content suggestions for {user_id} ({platform})")
    return {
        'topic': sanitize_input(topic, MAX_TOPIC_LENGTH),
        'platform': platform,
        'hooks': generate_hooks(topic, platform, ai=ai),
        'caption': generate_caption(topic, platform, ai=ai),
        'hashtags': suggest_hashtags(topic, platform, ai=ai),
    }
