"""Gift card post-sale bot for Mercado Libre."""
