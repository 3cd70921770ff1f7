from dotenv import load_dotenv
import os

load_dotenv()  # Load variables from .env file

# Learned segmentation endpoint (Hugging Face image-segmentation format); unset disables it
SEGMENTATION_API_URL = os.getenv("SEGMENTATION_API_URL")
HUGGINGFACE_API_TOKEN = os.getenv("HUGGINGFACE_API_TOKEN")
SEGMENTATION_TIMEOUT = float(os.getenv("SEGMENTATION_TIMEOUT", "30"))
SEGMENTATION_LABELS = [
    label.strip()
    for label in os.getenv("SEGMENTATION_LABELS", "countertop,counter,kitchen island").split(",")
    if label.strip()
]

BLEND_MODE = os.getenv("BLEND_MODE", "boundary")  # boundary | poisson
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))  # 10MB per image
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
