# shared.py

# --- env + google clients ---
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Mapping

import gspread
import pandas as pd
import pytz
from dotenv import load_dotenv
from google.oauth2.service_account import Credentials

from retry import RetryingClient, RetryPolicy
from roles import PriorityRoleList, load_priority_roles
from wallet_store import DEFAULT_TAB, WalletStore

ROOT = Path(__file__).resolve().parent
load_dotenv(ROOT / ".env")

TZ_NAME = os.getenv("TZ", "UTC")
TZ = pytz.timezone(TZ_NAME)

GUILD_ID = int(os.getenv("GUILD_ID", "0"))
SPREADSHEET_ID = os.getenv("SPREADSHEET_ID") or os.getenv("GOOGLE_SHEETS_SPREADSHEET_ID")
WALLETS_TAB = os.getenv("WALLETS_TAB", DEFAULT_TAB)

KEY_PATH = os.getenv("GOOGLE_APPLICATION_CREDENTIALS", "creds/service-account.json")
KEY_PATH = str((ROOT / KEY_PATH).resolve())
SA_EMAIL = os.getenv("GOOGLE_SERVICE_ACCOUNT_EMAIL")
SA_PRIVATE_KEY = os.getenv("GOOGLE_SERVICE_ACCOUNT_PRIVATE_KEY")

PRIORITY_ROLES_PATH = str((ROOT / os.getenv("PRIORITY_ROLES_PATH", "priority_roles.json")).resolve())
LOOKUP_TIMEOUT = float(os.getenv("LOOKUP_TIMEOUT", "30"))
REPORT_DIR = ROOT / os.getenv("REPORT_DIR", "reports")

SHEETS_RETRY = RetryPolicy(
    max_attempts=int(os.getenv("SHEETS_MAX_ATTEMPTS", "5")),
    base_delay=float(os.getenv("SHEETS_BASE_DELAY", "1")),
    max_delay=float(os.getenv("SHEETS_MAX_DELAY", "15")),
)

SCOPES = ["https://www.googleapis.com/auth/spreadsheets"]


def check_config() -> None:
    """Fail before anything connects if a required setting is missing."""
    missing = []
    if not SPREADSHEET_ID:
        missing.append("SPREADSHEET_ID")
    if not (SA_EMAIL and SA_PRIVATE_KEY) and not os.path.isfile(KEY_PATH):
        missing.append(
            "GOOGLE_SERVICE_ACCOUNT_EMAIL + GOOGLE_SERVICE_ACCOUNT_PRIVATE_KEY "
            f"(or a service account key at {KEY_PATH})"
        )
    if not os.path.isfile(PRIORITY_ROLES_PATH):
        missing.append(f"priority roles file ({PRIORITY_ROLES_PATH})")
    if missing:
        raise RuntimeError("Missing configuration: " + "; ".join(missing))


def credentials() -> Credentials:
    if SA_EMAIL and SA_PRIVATE_KEY:
        # .env files usually carry the key with literal \n escapes
        info = {
            "type": "service_account",
            "client_email": SA_EMAIL,
            "private_key": SA_PRIVATE_KEY.replace("\\n", "\n"),
            "token_uri": "https://oauth2.googleapis.com/token",
        }
        return Credentials.from_service_account_info(info, scopes=SCOPES)
    return Credentials.from_service_account_file(KEY_PATH, scopes=SCOPES)


_gc: gspread.Client | None = None

def get_sheets_client() -> gspread.Client:
    global _gc
    if _gc is None:
        _gc = gspread.authorize(credentials())
    return _gc

def open_spreadsheet() -> gspread.Spreadsheet:
    return get_sheets_client().open_by_key(SPREADSHEET_ID)


def build_wallet_store() -> WalletStore:
    return WalletStore(open_spreadsheet, RetryingClient(SHEETS_RETRY), tab=WALLETS_TAB)


_store: WalletStore | None = None

def get_wallet_store() -> WalletStore:
    """The process-wide store; every writer in the bot must go through this one."""
    global _store
    if _store is None:
        _store = build_wallet_store()
    return _store


def priority_roles() -> PriorityRoleList:
    return load_priority_roles(PRIORITY_ROLES_PATH)


# --- Excel helpers (local .xlsx reports) ---

def _ensure_parent(path: str | Path) -> Path:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    return p

def _autosize_excel_columns(ws) -> None:
    from openpyxl.utils import get_column_letter
    for col_idx, col_cells in enumerate(ws.columns, start=1):
        max_len = 0
        for c in col_cells:
            l = len(str(c.value)) if c.value is not None else 0
            if l > max_len:
                max_len = l
        ws.column_dimensions[get_column_letter(col_idx)].width = min(max_len + 2, 60)

def write_excel_dicts(
    path: str | Path,
    sheet_name: str,
    records: Iterable[Mapping[str, Any]],
) -> str:
    """
    Write list[dict] to an .xlsx sheet, replacing the file. Keys become
    headers, in first-seen order. Returns the absolute path.
    """
    cols: list[str] = []
    rec_list = list(records)
    for r in rec_list:
        for k in r.keys():
            if k not in cols:
                cols.append(k)
    df = pd.DataFrame([[r.get(c) for c in cols] for r in rec_list], columns=cols)

    p = _ensure_parent(path)
    with pd.ExcelWriter(p, engine="openpyxl") as xw:
        df.to_excel(xw, sheet_name=sheet_name, index=False)
        _autosize_excel_columns(xw.book[sheet_name])
    return str(p.resolve())

def export_summary(summary, report_dir: str | Path | None = None) -> str:
    """Per-member results of a reconcile pass as reports/reconcile-<mode>-<stamp>.xlsx."""
    stamp = datetime.now(TZ).strftime("%Y%m%d-%H%M%S")
    path = Path(report_dir or REPORT_DIR) / f"reconcile-{summary.mode}-{stamp}.xlsx"
    return write_excel_dicts(path, summary.mode, summary.results)
