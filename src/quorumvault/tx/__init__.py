"""
Transaction construction for the UTXO (Bitcoin) and account (EVM) models.
"""
