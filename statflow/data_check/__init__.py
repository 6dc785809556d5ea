from .data_check import data_check, expression_variables

__all__ = ['data_check', 'expression_variables']
