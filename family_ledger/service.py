"""
Account Service Module

The operation surface consumed by the HTTP/session layer. Callers arrive with
an already-authorized account id and the id of the acting subject; nothing in
here performs authorization.
"""

from typing import Optional, Union

from .amounts import TransactionKind, parse_amount, signed_amount
from .config import LedgerConfig, get_config
from .errors import AccountNotFound
from .ledger import LedgerEngine
from .logging_config import get_logger, setup_logging_from_config
from .models import AccountView, PageCursor, Transaction
from .schemas import AccountViewModel, TransactionRequest
from .storage import create_store_from_config


class AccountService:
    """Account screen reads and deposit/withdrawal submission"""
    
    def __init__(self, engine: LedgerEngine):
        self.engine = engine
        self.config = engine.config
        self.logger = get_logger("family_ledger.service")
    
    def get_balance_and_page(
        self,
        account_id: str,
        page: Union[int, PageCursor, None] = None
    ) -> Optional[AccountView]:
        """
        Balance plus one page of transactions for the account view
        
        Args:
            account_id: Account to show
            page: Page index, cursor from a previous view, or None for the newest page
            
        Returns:
            The view, or None when the account does not exist
        """
        try:
            balance = self.engine.get_balance(account_id)
            if isinstance(page, int) and not isinstance(page, bool):
                transactions = self.engine.fetch_page_at(account_id, page)
            else:
                transactions = self.engine.fetch_page(account_id, page)
        except AccountNotFound:
            return None
        return AccountView(account_id=account_id, balance=balance, page=transactions)
    
    def append_transaction(self, account_id: str, subject_id: str, amount: int,
                           description: str) -> Transaction:
        """Append a signed amount; the caller owns the sign convention"""
        return self.engine.append_transaction(account_id, subject_id, amount, description)
    
    def deposit(self, account_id: str, subject_id: str, amount: str,
                description: str = "") -> Transaction:
        magnitude = parse_amount(amount, self.config.currency_marker)
        return self.append_transaction(
            account_id, subject_id, signed_amount(magnitude, TransactionKind.DEPOSIT), description
        )
    
    def withdraw(self, account_id: str, subject_id: str, amount: str,
                 description: str = "") -> Transaction:
        magnitude = parse_amount(amount, self.config.currency_marker)
        return self.append_transaction(
            account_id, subject_id, signed_amount(magnitude, TransactionKind.WITHDRAWAL), description
        )
    
    def submit(self, account_id: str, subject_id: str,
               request: TransactionRequest) -> Transaction:
        """Append a transaction from an entered request (withdrawals are negated)"""
        return self.append_transaction(
            account_id, subject_id,
            request.to_minor_units(self.config.currency_marker), request.description
        )
    
    def build_request(self, data: dict) -> TransactionRequest:
        """Validate entered form data against the configured currency marker"""
        return TransactionRequest.model_validate(
            data, context={"currency_marker": self.config.currency_marker}
        )
    
    def render(self, view: AccountView) -> AccountViewModel:
        """Response model with display-formatted amounts"""
        return AccountViewModel.from_view(
            view, self.config.currency_marker, self.config.amount_width
        )


def create_service(config: Optional[LedgerConfig] = None) -> AccountService:
    """Wire logging, store and engine from configuration"""
    config = config or get_config()
    setup_logging_from_config(config)
    store = create_store_from_config(config)
    return AccountService(LedgerEngine(store, config))
