"""
Prompt construction and response parsing.

Shared by every provider adapter so the same task produces the same prompt
whichever model answers it.
"""

import html
import json
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from campaign_credits.core.tasks import Product, TaskKind

from .errors import ProviderTransientError, ProviderUnsupportedError

TEMPERATURE_CREATIVE = 0.75
TEMPERATURE_STRUCTURED = 0.3

_TAG_RE = re.compile(r"<[^>]+>")
_FENCE_START_RE = re.compile(r"^```(?:json)?\s*")
_FENCE_END_RE = re.compile(r"\s*```$")


@dataclass(frozen=True)
class PromptContext:
    """Inputs a provider needs to generate one field."""
    products: Tuple[Product, ...]
    theme: str = ""
    tone: str = "Professional"
    language: str = "English"
    image_style: str = "Photorealistic"
    campaign_brief: str = ""
    store_context: str = ""
    product_context: str = ""
    currency: str = "GBP"
    currency_symbol: str = "£"
    campaign_ref: str = ""
    product: Optional[Product] = None
    subject_line: str = ""


@dataclass(frozen=True)
class TextPrompt:
    system: str
    user: str
    temperature: float
    max_tokens: int
    json_output: bool = False


def strip_tags(text: str) -> str:
    return html.unescape(_TAG_RE.sub("", text)).strip()


def truncate(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[: max_length - 3].rstrip() + "..."


def build_system_prompt(ctx: PromptContext, tone: Optional[str] = None) -> str:
    """Base copywriter instruction with tone, language and store currency."""
    prompt = (
        "You are an expert email marketing copywriter for an e-commerce store. "
        "Write compelling, conversion-focused copy. Be concise. Avoid cliches. "
        "Respond only with the requested content - no explanations, no preamble. "
        f"Always respond in {ctx.language or 'English'}. Tone: {tone or ctx.tone or 'Professional'}. "
        f"The store currency is {ctx.currency} ({ctx.currency_symbol}). "
        "Always use this currency symbol when mentioning prices."
    )
    if ctx.store_context:
        prompt += "\n\nStore context: " + ctx.store_context
    if ctx.product_context:
        prompt += "\n\nProduct context: " + ctx.product_context
    if ctx.campaign_brief:
        prompt += "\n\nCampaign brief from the user: " + ctx.campaign_brief
    return prompt


def build_product_summary(ctx: PromptContext) -> str:
    """Numbered list of products with price, category and description."""
    if not ctx.products:
        return "(No products provided)"

    lines = []
    for number, product in enumerate(ctx.products, start=1):
        line = f"{number}. {product.name}"
        if product.price:
            line += f" ({ctx.currency_symbol}{product.price})"
        if product.category:
            line += f" [{product.category}]"
        if product.short_description:
            line += "\n   " + truncate(strip_tags(product.short_description), 200)
        lines.append(line)
    return "\n".join(lines)


def format_single_product(product: Product, currency_symbol: str) -> str:
    parts = [f"Name: {product.name}"]
    if product.price:
        parts.append(f"Price: {currency_symbol}{product.price}")
    if product.category:
        parts.append(f"Category: {product.category}")
    if product.short_description:
        parts.append("Description: " + truncate(strip_tags(product.short_description), 300))
    if product.regular_price and product.sale_price:
        parts.append(
            f"Regular price: {currency_symbol}{product.regular_price}, "
            f"Sale price: {currency_symbol}{product.sale_price}"
        )
    return "\n".join(parts)


def extract_product_names(products: Tuple[Product, ...]) -> str:
    names = [p.name for p in products if p.name]
    return ", ".join(names) if names else "(No products)"


def calculate_average_price(products: Tuple[Product, ...]) -> str:
    prices = []
    for product in products:
        numeric = re.sub(r"[^0-9.]", "", product.price or "")
        try:
            value = float(numeric)
        except ValueError:
            continue
        if value > 0:
            prices.append(value)
    if not prices:
        return "N/A"
    return f"{sum(prices) / len(prices):,.2f}"


def _theme_line(ctx: PromptContext) -> str:
    return f"Campaign theme/occasion: {ctx.theme}\n\n" if ctx.theme else ""


def _subject_line_prompt(ctx: PromptContext) -> TextPrompt:
    user = (
        "Write a single email subject line for an e-commerce promotional campaign.\n\n"
        f"Products being promoted:\n{build_product_summary(ctx)}\n\n"
        f"{_theme_line(ctx)}"
        "Requirements:\n"
        "- Maximum 60 characters\n"
        "- Create urgency or curiosity\n"
        "- Mention a key product or benefit if possible\n"
        "- Do not use ALL CAPS\n"
        "- Return ONLY the subject line text, nothing else"
    )
    return TextPrompt(build_system_prompt(ctx), user, TEMPERATURE_CREATIVE, 150)


def _preview_text_prompt(ctx: PromptContext) -> TextPrompt:
    user = (
        "Write a single email preview text (preheader) that complements the following subject line.\n\n"
        f"Subject line: \"{ctx.subject_line}\"\n"
        f"Products in the email: {extract_product_names(ctx.products)}\n\n"
        "Requirements:\n"
        "- Maximum 100 characters\n"
        "- Should add information not already in the subject line\n"
        "- Encourage the reader to open the email\n"
        "- Return ONLY the preview text, nothing else"
    )
    return TextPrompt(build_system_prompt(ctx, tone="Friendly"), user, TEMPERATURE_CREATIVE, 150)


def _main_headline_prompt(ctx: PromptContext) -> TextPrompt:
    user = (
        "Write a single main headline for the hero section of a promotional email campaign.\n\n"
        f"Products being promoted:\n{build_product_summary(ctx)}\n\n"
        f"{_theme_line(ctx)}"
        "Requirements:\n"
        "- Maximum 80 characters\n"
        "- Bold and attention-grabbing\n"
        "- Convey the core value proposition or offer\n"
        "- Suitable as an H1 heading in an email\n"
        "- Return ONLY the headline text, nothing else"
    )
    return TextPrompt(build_system_prompt(ctx), user, TEMPERATURE_CREATIVE, 150)


def _main_description_prompt(ctx: PromptContext) -> TextPrompt:
    user = (
        "Write a short introductory paragraph for a promotional email campaign.\n\n"
        f"Products being promoted:\n{build_product_summary(ctx)}\n\n"
        f"{_theme_line(ctx)}"
        "Requirements:\n"
        "- 2 to 4 sentences maximum\n"
        "- Highlight the value of the featured products\n"
        "- Include a subtle call-to-action\n"
        "- Do not repeat product names verbatim, reference them naturally\n"
        "- Do not use placeholder text like [Store Name]\n"
        "- Return ONLY the paragraph text, nothing else"
    )
    return TextPrompt(build_system_prompt(ctx), user, TEMPERATURE_CREATIVE, 400)


def _product_copy_prompt(ctx: PromptContext) -> TextPrompt:
    if ctx.product is None:
        raise ProviderUnsupportedError("Product copy needs a product")
    user = (
        "Write marketing copy for this product to use in a promotional email.\n\n"
        f"Product details:\n{format_single_product(ctx.product, ctx.currency_symbol)}\n\n"
        "Return a valid JSON object with exactly these keys:\n"
        "- \"headline\": a short headline, maximum 60 characters, focused on the key "
        "benefit, not just the product name\n"
        "- \"short_description\": 1 to 2 sentences highlighting the main benefit, "
        "without the price and without placeholder text\n\n"
        "Return ONLY the JSON object, no markdown code fences, no explanation"
    )
    return TextPrompt(build_system_prompt(ctx), user, TEMPERATURE_CREATIVE, 300, json_output=True)


def _coupon_prompt(ctx: PromptContext) -> TextPrompt:
    user = (
        "Suggest a discount coupon for an e-commerce email campaign.\n\n"
        f"Products being promoted:\n{build_product_summary(ctx)}\n\n"
        f"Average product price: {calculate_average_price(ctx.products)}\n"
        f"{_theme_line(ctx)}"
        "Return your response as a valid JSON object with exactly these keys:\n"
        "- \"value\": the discount amount as an integer (e.g. 20)\n"
        "- \"type\": either \"percent\" or \"fixed_cart\"\n"
        "- \"text\": a short promotional text for the coupon (e.g. \"Get 20% off your order!\")\n\n"
        "Guidelines:\n"
        "- Percentage discounts should be between 5 and 50\n"
        "- Fixed discounts should be reasonable relative to the average price\n"
        "- The promotional text should be exciting and under 60 characters\n"
        "- Return ONLY the JSON object, no markdown code fences, no explanation"
    )
    system = build_system_prompt(
        PromptContext(
            products=ctx.products,
            language="English",
            currency=ctx.currency,
            currency_symbol=ctx.currency_symbol,
        )
    )
    return TextPrompt(system, user, TEMPERATURE_STRUCTURED, 200, json_output=True)


_TEXT_PROMPTS: Dict[TaskKind, Callable[[PromptContext], TextPrompt]] = {
    TaskKind.SUBJECT_LINE: _subject_line_prompt,
    TaskKind.PREVIEW_TEXT: _preview_text_prompt,
    TaskKind.MAIN_HEADLINE: _main_headline_prompt,
    TaskKind.MAIN_DESCRIPTION: _main_description_prompt,
    TaskKind.PRODUCT_COPY: _product_copy_prompt,
    TaskKind.COUPON_SUGGESTION: _coupon_prompt,
}


def build_text_prompt(kind: TaskKind, ctx: PromptContext) -> TextPrompt:
    """Prompt for a text task.

    Raises:
        ProviderUnsupportedError: If ``kind`` is not a text task
    """
    builder = _TEXT_PROMPTS.get(kind)
    if builder is None:
        raise ProviderUnsupportedError(f"{kind.value} is not a text generation task")
    return builder(ctx)


def clean_generated_text(text: str) -> str:
    """Strip surrounding quotes and markdown bold markers models add."""
    text = text.strip()
    for quote in ('"', "'"):
        if len(text) >= 2 and text[0] == quote and text[-1] == quote:
            text = text[1:-1]
    text = text.replace("**", "").replace("__", "")
    return text.strip()


def parse_json_object(raw: str) -> Dict[str, Any]:
    """Decode a JSON object, tolerating markdown code fences.

    Raises:
        ProviderTransientError: If the response is not a JSON object
    """
    cleaned = _FENCE_END_RE.sub("", _FENCE_START_RE.sub("", raw.strip())).strip()
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise ProviderTransientError(f"Provider returned invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ProviderTransientError("Provider returned JSON that is not an object")
    return data


def parse_coupon_response(raw: str) -> Dict[str, Any]:
    """Coupon suggestion with defaults for missing or invalid values."""
    data = parse_json_object(raw)

    try:
        value = abs(int(data.get("value", 10)))
    except (TypeError, ValueError):
        value = 10
    if value < 1:
        value = 10

    coupon_type = str(data.get("type") or "percent")
    if coupon_type not in ("percent", "fixed_cart"):
        coupon_type = "percent"
    if coupon_type == "percent" and value > 100:
        value = 50

    text = strip_tags(str(data.get("text") or ""))
    if not text:
        text = f"Get {value}% off your order!"

    return {"value": value, "type": coupon_type, "text": text}


def parse_text_fields(kind: TaskKind, raw: str) -> Dict[str, Any]:
    """Turn a raw completion into the task's named fields.

    Raises:
        ProviderTransientError: If the completion is empty or malformed
    """
    if not raw or not raw.strip():
        raise ProviderTransientError("Provider returned an empty response")

    if kind is TaskKind.COUPON_SUGGESTION:
        return parse_coupon_response(raw)

    if kind is TaskKind.PRODUCT_COPY:
        data = parse_json_object(raw)
        headline = clean_generated_text(str(data.get("headline") or ""))
        description = clean_generated_text(str(data.get("short_description") or ""))
        if not headline or not description:
            raise ProviderTransientError("Product copy response is missing fields")
        return {"headline": headline, "short_description": description}

    text = clean_generated_text(raw)
    if not text:
        raise ProviderTransientError("Provider returned an empty response")
    return {kind.value: text}


def build_image_prompt(kind: TaskKind, ctx: PromptContext) -> str:
    """Prompt for a main banner or single product image.

    Raises:
        ProviderUnsupportedError: If ``kind`` is not an image task or lacks input
    """
    style = ctx.image_style or "Photorealistic"

    if kind is TaskKind.MAIN_IMAGE:
        if not ctx.products:
            raise ProviderUnsupportedError(
                "At least one product is required to generate a main email image"
            )
        theme_text = (
            f"Campaign theme: {ctx.theme}." if ctx.theme
            else "General e-commerce promotional campaign."
        )
        return (
            f"A professional {style} e-commerce email banner image representing: "
            f"{extract_product_names(ctx.products)}. {theme_text} "
            "Clean composition, vibrant colours, suitable for a newsletter header. "
            "No text, labels, watermarks, or logos. Aspect ratio: horizontal 600x300 pixels."
        )

    if kind is TaskKind.PRODUCT_IMAGE:
        if ctx.product is None or not ctx.product.name:
            raise ProviderUnsupportedError("Product name is required to generate an image")
        description = strip_tags(ctx.product.short_description)
        return (
            f"A professional {style} photograph of {ctx.product.name}. {description} "
            "Clean neutral background, high detail, sharp focus, suitable for an e-commerce email. "
            "No text, labels, watermarks, or logos. Aspect ratio: horizontal."
        )

    raise ProviderUnsupportedError(f"{kind.value} is not an image generation task")
