"""Merch-studio prompt composition: product catalog, mockup prompts, variation directions."""

from typing import List, Optional

from pydantic import BaseModel

from imagestudio.errors import ClassifiedError, ErrorKind

DEFAULT_STYLE = "professional high-quality"


class MerchProduct(BaseModel):
    id: str
    name: str
    description: str
    default_prompt: str


MERCH_PRODUCTS: List[MerchProduct] = [
    MerchProduct(
        id="tshirt-white",
        name="Classic White Tee",
        description="Cotton crew neck",
        default_prompt="A {style_preference} product photography shot of a plain white t-shirt lying flat on a minimalist concrete surface, featuring this logo printed clearly on the chest.",
    ),
    MerchProduct(
        id="tshirt-graphic",
        name="Graphic T-Shirt",
        description="Premium cotton graphic tee",
        default_prompt="A {style_preference} studio shot of a classic fit graphic t-shirt with a bold design on the front, featuring this logo prominently.",
    ),
    MerchProduct(
        id="hoodie-black",
        name="Streetwear Hoodie",
        description="Black oversized hoodie",
        default_prompt="A {style_preference} studio photo of a black streetwear hoodie on a mannequin, with this logo prominently displayed on the center chest area. Cinematic lighting.",
    ),
    MerchProduct(
        id="mug-ceramic",
        name="Ceramic Mug",
        description="White glossy finish",
        default_prompt="A {style_preference} lifestyle photography shot of a white ceramic coffee mug on a wooden table next to a book, with this logo printed on the side of the mug.",
    ),
    MerchProduct(
        id="tote-bag",
        name="Canvas Tote",
        description="Eco-friendly beige tote",
        default_prompt="A {style_preference} studio shot of a beige canvas tote bag hanging on a hook, with this logo design centered on the bag fabric.",
    ),
    MerchProduct(
        id="cap-baseball",
        name="Baseball Cap",
        description="Navy blue structured cap",
        default_prompt="A {style_preference} closeup of a navy blue baseball cap sitting on a shelf, with this logo embroidered on the front panel.",
    ),
    MerchProduct(
        id="phone-case",
        name="Phone Case",
        description="Slim protective case",
        default_prompt="A {style_preference} product shot of a modern smartphone case lying on a marble countertop, with this logo design printed on the back of the case.",
    ),
    MerchProduct(
        id="sticker-pack",
        name="Sticker Pack",
        description="Die-cut vinyl stickers",
        default_prompt="A {style_preference} flat lay photography shot of die-cut vinyl stickers scattered on a laptop lid, featuring this logo as the main sticker design with a white border.",
    ),
    MerchProduct(
        id="mug-travel",
        name="Travel Tumbler",
        description="Stainless steel coffee cup",
        default_prompt="A {style_preference} lifestyle shot of a matte black stainless steel travel coffee tumbler sitting on an office desk, with this logo laser-etched onto the side.",
    ),
    MerchProduct(
        id="laptop-sleeve",
        name="Laptop Sleeve",
        description="Protective laptop sleeve",
        default_prompt="A {style_preference} product shot of a protective laptop sleeve featuring customizable full-print designs with this logo centered on the fabric.",
    ),
    MerchProduct(
        id="canvas-print",
        name="Canvas Print",
        description="Wall-mounted canvas",
        default_prompt="A {style_preference} interior design shot of a wall-mounted canvas print ideal for digital artwork and photos, displaying this logo art in a modern living room.",
    ),
    MerchProduct(
        id="beanie",
        name="Beanie",
        description="Comfortable beanie hat",
        default_prompt="A {style_preference} closeup of a comfortable beanie hat, perfect for embroidery, with this logo stitched onto the folded cuff.",
    ),
]

VARIATION_DIRECTIONS: List[str] = [
    "Use dramatic cinematic lighting with strong contrast and shadows to highlight the texture and logo.",
    "Show the product from a dynamic 45-degree angle or slightly high angle to create depth. Soft, diffused daylighting.",
    "Focus on a closer shot emphasizing the material quality and the logo application details. Studio lighting.",
]


def get_product(product_id: str) -> MerchProduct:
    for product in MERCH_PRODUCTS:
        if product.id == product_id:
            return product
    raise ClassifiedError(
        ErrorKind.MALFORMED_REQUEST,
        f"Unknown product '{product_id}'. Available: {', '.join(p.id for p in MERCH_PRODUCTS)}",
    )


def construct_merch_prompt(
    product: MerchProduct, style_preference: Optional[str], has_background: bool
) -> str:
    style = (style_preference or "").strip() or DEFAULT_STYLE
    if has_background:
        return (
            "Image 1 is a logo. Image 2 is a background scene. "
            f"Generate a {style} mockup of a {product.name} ({product.description}) "
            "placed naturally in the environment of Image 2. "
            "Apply the logo from Image 1 onto the product realistically. "
            "Ensure lighting and perspective match the background scene."
        )
    return product.default_prompt.replace("{style_preference}", style)


def error_suggestion(error: ClassifiedError, has_background: bool = False) -> Optional[str]:
    """User-facing tip for a failed mockup; None for errors never shown to the user."""
    kind = error.kind
    if kind is ErrorKind.CANCELLED:
        return None
    if kind is ErrorKind.SAFETY_BLOCK:
        return (
            "Content Safety: the model detected sensitive content. Try a more abstract "
            "logo or a cleaner version without text or faces."
        )
    if kind is ErrorKind.RATE_LIMIT:
        return "High Traffic: too many requests. Wait about 60 seconds before generating again."
    if kind is ErrorKind.TRANSIENT_OVERLOAD:
        return "Server Busy: the model is temporarily overloaded. Try again in a few minutes."
    if kind is ErrorKind.AUTHENTICATION:
        return (
            "Configuration Error: the API key is missing or invalid. "
            "Set IMAGESTUDIO__ENGINES__<ENGINE>__API_KEY in your environment or .env file."
        )
    if kind is ErrorKind.MALFORMED_REQUEST:
        if has_background:
            return (
                "Input Conflict: the background might be incompatible with the logo. "
                "Ensure both are standard PNG/JPG files."
            )
        return "Format Issue: the logo may be corrupted or unsupported. Convert it to PNG or JPG."
    if kind is ErrorKind.TIMEOUT:
        return "Timeout: the model took too long. Try a smaller image or try again."
    if kind is ErrorKind.ZERO_CONTENT:
        return "No Output: the model returned nothing usable. Rephrase the style or try again."
    return (
        "General Tip: a high-contrast PNG logo with transparency gives the best results. "
        "If the issue persists, try again later."
    )
