"""Crypto-collateralised lending ledger.

Services live in their own modules and are imported from there:

    from lending_ledger.offers import LoanOfferService
    from lending_ledger.applications import LoanApplicationService
    from lending_ledger.origination import LoanOriginationService
    from lending_ledger.loans import LoanService
    from lending_ledger.invoices import InvoiceService
    from lending_ledger.withdrawals import WithdrawalService
    from lending_ledger.balances import BalanceProjector
"""
