"""finsync: offline-first sync layer for the finance tracker."""
