import csv
import io
import sys
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, localcontext
from enum import Enum
from typing import NamedTuple, Optional

FOUR_PLACES = Decimal(".0001")
MAX_CLIENT_ID = 65535
MAX_TX_ID = 4294967295


def round_amount(amount):
    # floats go through str so 1.12345 rounds like the literal, not its binary approximation
    if not isinstance(amount, Decimal):
        amount = Decimal(str(amount))
    # quantize fails once the result needs more digits than the context precision
    with localcontext() as ctx:
        ctx.prec = max(ctx.prec, amount.adjusted() + 6)
        return amount.quantize(FOUR_PLACES, rounding=ROUND_HALF_UP)


class TransactionType(Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    DISPUTE = "dispute"
    RESOLVE = "resolve"
    CHARGEBACK = "chargeback"
    UNKNOWN = "unknown"

    @classmethod
    def from_string(cls, value):
        """Map a record type string onto a member, case-sensitively.

        Anything unrecognized becomes UNKNOWN so the row is skipped later
        instead of aborting the run.
        """
        for member in cls:
            if member is not cls.UNKNOWN and member.value == value:
                return member
        return cls.UNKNOWN


class Transaction(NamedTuple):
    account_id: int
    tx_id: int
    tx_type: TransactionType
    amount: Optional[Decimal] = None


class RecordFormatError(ValueError):
    pass


class Account:

    def __init__(self, account_id, balance=Decimal(0)):
        self.account_id = account_id
        self.balance = Decimal(balance)
        self.held = Decimal(0)
        self.locked = False

    @property
    def available(self):
        return self.balance - self.held

    def increment(self, amount):
        self.balance += amount
        return self.balance

    def decrement(self, amount):
        # no funds check, balance is allowed to go negative
        self.balance -= amount
        return self.balance

    def hold(self, amount):
        self.held += amount
        return self.held

    def release(self, amount):
        self.held -= amount
        return self.held

    def lock(self):
        self.locked = True
        return self.locked

    def unlock(self):
        self.locked = False
        return self.locked

    def __repr__(self):
        return (f"Account({self.account_id}, available={self.available}, held={self.held}, "
                f"total={self.balance}, locked={self.locked})")


def is_real_transaction(transaction):
    return transaction.tx_type in (TransactionType.DEPOSIT, TransactionType.WITHDRAWAL)


def is_withdrawal(transaction):
    return transaction.tx_type is TransactionType.WITHDRAWAL


def is_dispute_class(transaction):
    return transaction.tx_type in (TransactionType.DISPUTE, TransactionType.RESOLVE, TransactionType.CHARGEBACK)


def find_parent(transaction, transactions):
    """Return the first deposit or withdrawal sharing ``transaction``'s tx id.

    The whole history is scanned, including rows that come after
    ``transaction`` in the input. Returns None when nothing matches.
    """
    for candidate in transactions:
        if is_real_transaction(candidate) and candidate.tx_id == transaction.tx_id:
            return candidate
    return None


class TransactionEngine:

    def __init__(self, accounts=None, diagnostics=None):
        self.accounts = accounts if accounts is not None else {}
        self.diagnostics = diagnostics if diagnostics is not None else self.error_log

    def get_account(self, account_id):
        if account_id not in self.accounts:
            self.accounts[account_id] = Account(account_id)
        return self.accounts[account_id]

    def apply(self, transaction, parent=None):
        account = self.get_account(transaction.account_id)

        # locked accounts are reported in the output but still take transactions
        tx_type = transaction.tx_type
        if tx_type is TransactionType.DEPOSIT:
            self.apply_deposit(account, transaction)
        elif tx_type is TransactionType.WITHDRAWAL:
            self.apply_withdrawal(account, transaction)
        elif tx_type is TransactionType.DISPUTE:
            self.apply_dispute(account, transaction, parent)
        elif tx_type is TransactionType.RESOLVE:
            self.apply_resolve(account, transaction, parent)
        elif tx_type is TransactionType.CHARGEBACK:
            self.apply_chargeback(account, transaction, parent)
        else:
            self.diagnostics("unknown transaction type, skipping", transaction)

        return account

    def apply_deposit(self, account, transaction):
        if transaction.amount is None:
            self.diagnostics("missing amount", transaction)
            return
        account.increment(round_amount(transaction.amount))

    def apply_withdrawal(self, account, transaction):
        if transaction.amount is None:
            self.diagnostics("missing amount", transaction)
            return
        account.decrement(round_amount(transaction.amount))

    def apply_dispute(self, account, transaction, parent):
        amount = self.get_parent_amount(transaction, parent)
        if amount is None:
            return
        account.hold(amount)

    def apply_resolve(self, account, transaction, parent):
        # a resolve with no preceding dispute still releases, which can leave held negative
        amount = self.get_parent_amount(transaction, parent)
        if amount is None:
            return
        account.release(amount)
        account.increment(amount)

    def apply_chargeback(self, account, transaction, parent):
        amount = self.get_parent_amount(transaction, parent)
        if amount is None:
            return
        # the withdrawal already debited the balance, so only the hold is cleared
        account.release(amount)
        account.lock()

    def get_parent_amount(self, transaction, parent):
        """Rounded amount a dispute-class transaction acts on, or None to skip it.

        Only disputed withdrawals move funds; a deposit parent is ignored
        without a diagnostic.
        """
        if parent is None:
            self.diagnostics("no parent tx found", transaction)
            return None
        if not is_withdrawal(parent):
            return None
        if parent.amount is None:
            self.diagnostics("parent tx has no amount", transaction)
            return None
        return round_amount(parent.amount)

    @staticmethod
    def error_log(message, transaction=None):
        if transaction is None:
            print(f"transaction error: {message}", file=sys.stderr)
            return
        amount_detail = ""
        if transaction.amount is not None:
            amount_detail = f" of ${transaction.amount}"
        print(f"tx_id {transaction.tx_id}, client_id {transaction.account_id}, "
              f"failed to apply {transaction.tx_type.value}{amount_detail}: {message}", file=sys.stderr)


def process_transactions(transactions, engine=None):
    if engine is None:
        engine = TransactionEngine()
    history = list(transactions)
    for transaction in history:
        parent = None
        if is_dispute_class(transaction):
            parent = find_parent(transaction, history)
        engine.apply(transaction, parent)
    return engine.accounts


class TransactionReader:
    type_field_idx = 0
    client_field_idx = 1
    tx_field_idx = 2
    amount_field_idx = 3

    def __init__(self, filename):
        self.filename = filename

    def read_transaction_data(self):
        if not self.filename:
            raise RuntimeError("no filename to read has been set. aborting.")
        with open(self.filename, newline="", encoding="utf-8") as file:
            try:
                return self.read_records(csv.reader(file))
            except UnicodeDecodeError as e:
                raise RecordFormatError(f"{self.filename} is not valid utf-8: {e}") from e

    def read_records(self, csvreader):
        transactions = []
        _ = next(csvreader, None)  # header
        for record in csvreader:
            if not record or not any(field.strip() for field in record):
                continue
            try:
                transactions.append(self.normalize_record(record))
            except (ValueError, InvalidOperation, IndexError) as e:
                raise RecordFormatError(
                    f"line {csvreader.line_num}: {e} while attempting to normalize row like: {record!r}"
                ) from e
        return transactions

    def normalize_record(self, record):
        tx_type = TransactionType.from_string(record[self.type_field_idx].strip())
        client_id = self.parse_id(record[self.client_field_idx], MAX_CLIENT_ID, "client_id")
        tx_id = self.parse_id(record[self.tx_field_idx], MAX_TX_ID, "tx_id")
        amount = self.get_normalized_amount(record)

        if amount is None and tx_type in (TransactionType.DEPOSIT, TransactionType.WITHDRAWAL):
            raise ValueError(f"{tx_type.value} requires an amount")

        return Transaction(client_id, tx_id, tx_type, amount)

    @staticmethod
    def parse_id(value, upper_bound, name):
        value = value.strip()
        if "_" in value:
            raise ValueError(f"invalid {name} {value!r}")
        parsed = int(value)
        if not (0 <= parsed <= upper_bound):
            raise ValueError(f"invalid {name} {parsed}")
        return parsed

    def get_normalized_amount(self, record):
        if len(record) <= self.amount_field_idx:
            return None
        raw = record[self.amount_field_idx].strip()
        if not raw:
            return None
        if "_" in raw:
            raise ValueError(f"invalid amount {raw}")
        amount = Decimal(raw)
        if not amount.is_finite():
            raise ValueError(f"invalid amount {raw}")
        return amount


def format_amount(amount):
    return f"{round_amount(amount):f}"


def write_accounts(accounts, out):
    csvwriter = csv.writer(out, lineterminator="\n")
    csvwriter.writerow(["client", "available", "held", "total", "locked"])
    for account_id, account in accounts.items():
        csvwriter.writerow([
            account_id,
            format_amount(account.available),
            format_amount(account.held),
            format_amount(account.balance),
            str(account.locked).lower(),
        ])


def generate_output(filename, out=None, engine=None):
    transactions = TransactionReader(filename).read_transaction_data()
    accounts = process_transactions(transactions, engine)
    # the table reaches out in a single write
    buffer = io.StringIO()
    write_accounts(accounts, buffer)
    if out is None:
        out = sys.stdout
    out.write(buffer.getvalue())
    out.flush()
    return accounts


def main(argv=None):
    args = sys.argv[1:] if argv is None else argv
    if not args:
        print("usage: account-engine <transactions.csv>", file=sys.stderr)
        return 1

    try:
        generate_output(args[0])
    except (OSError, RuntimeError, RecordFormatError, csv.Error) as e:
        print(f"account-engine: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
