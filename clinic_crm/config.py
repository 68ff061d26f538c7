import os

from dotenv import load_dotenv

# Load .env only in development
load_dotenv()

# --- DATABASE ---
MONGO_URI = os.environ.get("MONGO_URI")
MONGO_DB_NAME = os.environ.get("MONGO_DB_NAME")


# --- UPLOADS ---
UPLOAD_FOLDER = os.environ.get("UPLOAD_FOLDER", os.path.join(os.getcwd(), "uploads"))
MAX_UPLOAD_MB = int(os.environ.get("MAX_UPLOAD_MB", "10"))
ALLOWED_UPLOAD_EXTENSIONS = {'pdf', 'png', 'jpg', 'jpeg', 'gif', 'webp', 'doc', 'docx', 'mp3', 'wav', 'm4a'}

# --- CLIENT ---
CRM_API_URL = os.environ.get("CRM_API_URL", "http://localhost:5000/api")
CRM_REQUEST_TIMEOUT = float(os.environ.get("CRM_REQUEST_TIMEOUT", "10"))

# Upper bound for each dependent delete in a cascade
CASCADE_TIMEOUT = float(os.environ.get("CASCADE_TIMEOUT", "15"))
