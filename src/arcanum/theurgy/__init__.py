"""
Theurgy - Command implementations for Arcanum.

- tasks:    deploy-then-interact flows (hello, erc20, nft, perc20, private-nft, proxy)
- interact: generic deploy / send / query / handle
- menu:     numbered interactive menu over the tasks
- common:   session setup, retry policy, failure rendering
"""
